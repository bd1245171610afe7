"""Shared fixtures: scripted fake transport, settings, tool registry."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import pytest

from palaver.config import Settings
from palaver.core.abort import AbortSignal
from palaver.core.models import FunctionCall, GenerateConfig, Message, Part
from palaver.events import TelemetryEvent, TelemetrySink
from palaver.tools.base import RiskClass, ToolHandler, ToolKind, ToolResult
from palaver.tools.registry import ToolRegistry
from palaver.transport.base import ModelChunk, ModelResponse

# ---------------------------------------------------------------------------
# Chunk helpers
# ---------------------------------------------------------------------------


def text_chunk(text: str, finish_reason: str | None = None, prompt_tokens: int | None = None) -> ModelChunk:
    return ModelChunk(parts=[Part(text=text)], finish_reason=finish_reason, prompt_token_count=prompt_tokens)


def call_chunk(call_id: str, name: str, args: dict[str, Any] | None = None, finish_reason: str | None = None) -> ModelChunk:
    return ModelChunk(
        parts=[Part(function_call=FunctionCall(id=call_id, name=name, args=args or {}))],
        finish_reason=finish_reason,
    )


def reply(text: str) -> list[ModelChunk]:
    """A complete, valid streamed text reply."""
    return [text_chunk(text), ModelChunk(finish_reason="STOP")]


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


@dataclass
class RecordedCall:
    model: str
    history: list[Message]
    config: GenerateConfig
    tools: list[dict[str, Any]]
    system_instruction: str | None


class FakeTransport:
    """Scripted ModelTransport.

    ``streams`` items are either a list of ModelChunks (one stream, which
    may contain an Exception to raise mid-stream) or an Exception raised
    when the stream is opened. ``responses`` items are a ModelResponse, a
    str, a dict (returned as JSON text) or an Exception.
    """

    def __init__(self, streams: list[Any] | None = None, responses: list[Any] | None = None) -> None:
        self.streams = list(streams or [])
        self.responses = list(responses or [])
        self.stream_calls: list[RecordedCall] = []
        self.content_calls: list[RecordedCall] = []

    async def generate_content_stream(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ):
        self.stream_calls.append(RecordedCall(model, list(history), config, list(tools), system_instruction))
        if not self.streams:
            raise AssertionError("FakeTransport ran out of scripted streams")
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item
        return self._iterate(item)

    async def _iterate(self, chunks: list[Any]):
        for chunk in chunks:
            await asyncio.sleep(0)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def generate_content(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ) -> ModelResponse:
        self.content_calls.append(RecordedCall(model, list(history), config, list(tools), system_instruction))
        if not self.responses:
            raise AssertionError("FakeTransport ran out of scripted responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            item = json.dumps(item)
        if isinstance(item, str):
            return ModelResponse(parts=[Part(text=item)], finish_reason="STOP")
        return item


class RecordingTelemetry(TelemetrySink):
    """Keeps every recorded event in memory instead of queueing it."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[TelemetryEvent] = []

    def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[TelemetryEvent]:
        return [e for e in self.events if e.type == event_type]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "sk-ant-test-key",
        "model": "claude-sonnet-4-5",
        "retry_initial_delay": 0.0,
        "retry_max_delay": 0.0,
        "skip_next_speaker_check": True,
        "workspace_dir": "/tmp/palaver-test-workspace",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(workspace_dir=str(tmp_path))


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


def make_tool(
    name: str,
    kind: ToolKind = ToolKind.READ,
    risk: RiskClass = RiskClass.NONE,
    output: Any = "ok",
    delay: float = 0.0,
    fail: bool = False,
) -> ToolHandler:
    async def execute(args: dict[str, Any], signal: AbortSignal | None) -> ToolResult:
        if delay:
            await asyncio.sleep(delay)
        if fail:
            return ToolResult.fail(f"{name} failed")
        return ToolResult.ok(output)

    return ToolHandler(
        name=name,
        description=f"Test tool {name}",
        schema={"type": "object", "properties": {}, "required": []},
        execute=execute,
        kind=kind,
        risk=risk,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(make_tool("lookup"))
    reg.register(make_tool("edit", kind=ToolKind.EDIT, risk=RiskClass.EDIT))
    reg.register(make_tool("shell", kind=ToolKind.EXECUTE, risk=RiskClass.DESTRUCTIVE))
    return reg
