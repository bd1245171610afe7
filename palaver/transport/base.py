"""Model transport boundary.

The orchestration core only sees ModelChunk / ModelResponse values built
from internal Parts; the wire format is each transport's own concern.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from palaver.core.abort import AbortSignal
from palaver.core.models import GenerateConfig, Message, Part


@dataclass
class ModelChunk:
    """One increment of a streamed model response."""

    parts: list[Part] = field(default_factory=list)
    finish_reason: str | None = None
    prompt_token_count: int | None = None


@dataclass
class ModelResponse:
    """A complete, non-streamed model response."""

    parts: list[Part] = field(default_factory=list)
    finish_reason: str | None = None
    prompt_token_count: int | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text and not p.thought)


class ModelTransport(Protocol):
    """What the core needs from a model endpoint."""

    async def generate_content_stream(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ) -> AsyncIterator[ModelChunk]:
        """Open a stream; errors before the first chunk raise TransportError."""
        ...

    async def generate_content(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ) -> ModelResponse: ...
