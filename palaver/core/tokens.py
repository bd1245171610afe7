"""Token estimation and per-model context limits.

Counts are a chars/4 heuristic over each message's JSON form. The
transport reports the real prompt token count after each call, which
the orchestrator prefers over the estimate when it has one.
"""

from __future__ import annotations

import json
import math
from typing import Any

from palaver.core.models import Message, serialized_length

DEFAULT_TOKEN_LIMIT = 200_000

# Context window per model family, matched by prefix (longest first).
_TOKEN_LIMITS: dict[str, int] = {
    "claude-sonnet-4-5": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-haiku-4-5": 200_000,
    "claude-3-7-sonnet": 200_000,
    "claude-3-5-haiku": 200_000,
    "claude-3-haiku": 200_000,
}


def token_limit(model: str) -> int:
    """Context window size for a model name, DEFAULT_TOKEN_LIMIT if unknown."""
    for prefix in sorted(_TOKEN_LIMITS, key=len, reverse=True):
        if model.startswith(prefix):
            return _TOKEN_LIMITS[prefix]
    return DEFAULT_TOKEN_LIMIT


def estimate_tokens(messages: list[Message]) -> int:
    """ceil(total serialized chars / 4)."""
    return math.ceil(sum(serialized_length(m) for m in messages) / 4)


def estimate_request_tokens(request: list[Any]) -> int:
    """floor(serialized chars / 4) of an outgoing request's parts."""
    payload = [p.to_dict() if hasattr(p, "to_dict") else p for p in request]
    return len(json.dumps(payload, ensure_ascii=False)) // 4
