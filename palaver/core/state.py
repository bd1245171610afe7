"""Mutable per-session state shared by the orchestrator's collaborators.

One instance per ConversationClient. Settings stay immutable; anything
that changes while a session runs lives here.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SessionState:
    session_id: str
    role: str = "software_engineer"
    approval_mode: str = "default"
    in_fallback_mode: bool = False
    quota_error_occurred: bool = False
    last_prompt_token_count: int = 0
