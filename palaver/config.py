"""Settings via pydantic-settings with PALAVER_ env prefix.

The API key uses validation_alias to read the same unprefixed
ANTHROPIC_API_KEY variable other tooling already exports.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PALAVER_", env_file=".env")

    log_level: str = "info"

    # Runtime host
    host: str = "0.0.0.0"
    port: int = 8000
    max_clients: int = 100
    client_idle_timeout: int = 900  # seconds before an idle session is released

    # Transport
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    max_tokens: int = 8192

    # Models. "auto" lets the router pick between default_model and lite_model.
    model: str = "auto"
    default_model: str = "claude-sonnet-4-5"
    lite_model: str = "claude-haiku-4-5"
    fallback_model: str = "claude-haiku-4-5"
    temperature: float = 0.0

    # Turn loop
    max_session_turns: int = -1  # <= 0 means unlimited
    skip_next_speaker_check: bool = False
    continue_on_failed_api_call: bool = True
    ide_mode: bool = False
    role: str = "software_engineer"

    # Compression
    compression_threshold: float = 0.7  # fraction of the model's token limit

    # Tool approval
    approval_mode: Literal["default", "auto_edit", "yolo"] = "default"
    workspace_dir: str = "/tmp/palaver-workspace"

    # Retry
    retry_max_attempts: int = 5
    retry_initial_delay: float = 5.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    persistent_429_threshold: int = 3

    # Loop detection
    tool_call_loop_threshold: int = 5
    content_loop_threshold: int = 10
    llm_loop_check_after_turns: int = 30

    # Telemetry
    telemetry_enabled: bool = True

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0.0 < self.compression_threshold <= 1.0:
            raise ValueError(
                f"compression_threshold must be in (0, 1], got {self.compression_threshold}"
            )
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        return self
