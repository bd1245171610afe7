"""Shared data models for the orchestration core.

Messages are plain dataclasses with an explicit dict form; the dict form
is what token estimates and compression split points are measured on,
and what the transport converts into its wire format.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    MODEL = "model"


@dataclass
class FunctionCall:
    """A model-issued request to invoke a tool."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionResponse:
    """Result of a tool call, sent back to the model in a user message."""

    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)


@dataclass
class Part:
    """One fragment of a message: text, thought, function call or response."""

    text: str | None = None
    thought: bool = False
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.text is not None:
            data["text"] = self.text
        if self.thought:
            data["thought"] = True
        if self.function_call is not None:
            data["function_call"] = {
                "id": self.function_call.id,
                "name": self.function_call.name,
                "args": self.function_call.args,
            }
        if self.function_response is not None:
            data["function_response"] = {
                "id": self.function_response.id,
                "name": self.function_response.name,
                "response": self.function_response.response,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        call = data.get("function_call")
        response = data.get("function_response")
        return cls(
            text=data.get("text"),
            thought=bool(data.get("thought", False)),
            function_call=FunctionCall(call["id"], call["name"], call.get("args", {})) if call else None,
            function_response=(
                FunctionResponse(response["id"], response["name"], response.get("response", {}))
                if response
                else None
            ),
        )

    @property
    def is_empty(self) -> bool:
        return (
            self.text is None
            and self.function_call is None
            and self.function_response is None
        )


@dataclass
class Message:
    """One conversational turn fragment."""

    role: Role
    parts: list[Part] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": str(self.role), "parts": [p.to_dict() for p in self.parts]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
        )

    @property
    def has_function_call(self) -> bool:
        return any(p.function_call is not None for p in self.parts)

    @property
    def has_function_response(self) -> bool:
        return any(p.function_response is not None for p in self.parts)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def text(self) -> str:
        """Concatenated non-thought text of this message."""
        return "".join(p.text for p in self.parts if p.text and not p.thought)


def serialized_length(message: Message) -> int:
    """Character length of a message's JSON form."""
    return len(json.dumps(message.to_dict(), ensure_ascii=False))


def text_parts(*texts: str) -> list[Part]:
    return [Part(text=t) for t in texts]


def user_message(*texts: str) -> Message:
    return Message(role=Role.USER, parts=text_parts(*texts))


def model_message(*texts: str) -> Message:
    return Message(role=Role.MODEL, parts=text_parts(*texts))


# ------------------------------------------------------------------
# Compression
# ------------------------------------------------------------------


class CompressionStatus(StrEnum):
    NOOP = "noop"
    COMPRESSED = "compressed"
    COMPRESSION_FAILED_INFLATED_TOKEN_COUNT = "compression_failed_inflated_token_count"


@dataclass
class ChatCompressionInfo:
    """Outcome of one compression attempt."""

    original_token_count: int
    new_token_count: int
    status: CompressionStatus


# ------------------------------------------------------------------
# Tool calls
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call issued by the model inside a turn. Immutable."""

    call_id: str
    name: str
    args: dict[str, Any]
    prompt_id: str = ""


# ------------------------------------------------------------------
# Stream events
# ------------------------------------------------------------------


class EventType(StrEnum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    CHAT_COMPRESSED = "chat_compressed"
    LOOP_DETECTED = "loop_detected"
    CONTEXT_WINDOW_WILL_OVERFLOW = "context_window_will_overflow"
    MAX_SESSION_TURNS = "max_session_turns"
    ERROR = "error"
    FINISHED = "finished"
    RETRY = "retry"
    INVALID_STREAM = "invalid_stream"
    USER_CANCELLED = "user_cancelled"


# Events after which a caller must not continue the sequence.
TERMINAL_EVENTS = frozenset({
    EventType.LOOP_DETECTED,
    EventType.CONTEXT_WINDOW_WILL_OVERFLOW,
    EventType.MAX_SESSION_TURNS,
    EventType.ERROR,
    EventType.USER_CANCELLED,
})


@dataclass
class StreamEvent:
    """A single event yielded to the host while a request is processed."""

    type: EventType
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif hasattr(value, "__dataclass_fields__"):
            value = asdict(value)
        return {"type": str(self.type), "value": value}


@dataclass
class ThoughtSummary:
    subject: str
    description: str


@dataclass
class StructuredError:
    message: str
    status: int | None = None


@dataclass
class RoutingDecision:
    """Model choice for one logical request sequence."""

    model: str
    reason: str = ""
    source: str = ""


@dataclass
class GenerateConfig:
    """Per-call overrides for a model request.

    Passed explicitly instead of patching Settings for one call.
    """

    system_instruction: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    response_schema: dict[str, Any] | None = None
    tools_enabled: bool = True
