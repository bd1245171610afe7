"""ChatSession: history ownership and the streaming send layer.

A session keeps the comprehensive history (every message, including
model output that later turned out to be unusable) and derives the
curated history sent to the model from it. A send appends the user
message once, streams the model response through RetryPolicy, and
appends the consolidated model message. If the stream is interrupted
for any reason, history is rolled back to where it was before the send.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from palaver.core.abort import AbortSignal
from palaver.core.errors import InvalidStreamError, TransportError
from palaver.core.fallback import FallbackHandler
from palaver.core.models import GenerateConfig, Message, Part, Role
from palaver.core.retry import RetryPolicy
from palaver.core.state import SessionState
from palaver.events import (
    CONTENT_RETRY,
    CONTENT_RETRY_FAILURE,
    NullTelemetry,
    TelemetryEvent,
    TelemetrySink,
)
from palaver.tools.registry import ToolRegistry
from palaver.transport.base import ModelChunk, ModelTransport

logger = logging.getLogger(__name__)

# 1 initial call + 1 retry for streams that end without usable content
INVALID_CONTENT_RETRY_ATTEMPTS = 2
INVALID_CONTENT_RETRY_DELAY = 0.5  # seconds, grows linearly per attempt


class ChatEventType(StrEnum):
    CHUNK = "chunk"
    # The previous attempt's partial output should be discarded
    RETRY = "retry"


@dataclass
class ChatStreamEvent:
    type: ChatEventType
    value: ModelChunk | None = None


# ------------------------------------------------------------------
# History helpers
# ------------------------------------------------------------------


def is_valid_content(message: Message) -> bool:
    if not message.parts:
        return False
    for part in message.parts:
        if part.is_empty:
            return False
        if not part.thought and part.text is not None and part.text == "":
            return False
    return True


def strip_thoughts(message: Message) -> Message:
    return Message(role=message.role, parts=[p for p in message.parts if not p.thought])


def extract_curated_history(history: list[Message]) -> list[Message]:
    """Valid turns only, thoughts stripped.

    A run of consecutive model messages is dropped entirely if any of
    them is invalid (empty, or an empty text part).
    """
    curated: list[Message] = []
    i = 0
    while i < len(history):
        if history[i].role == Role.USER:
            curated.append(strip_thoughts(history[i]))
            i += 1
            continue
        model_output: list[Message] = []
        is_valid = True
        while i < len(history) and history[i].role == Role.MODEL:
            model_output.append(history[i])
            if is_valid and not is_valid_content(history[i]):
                is_valid = False
            i += 1
        if is_valid:
            curated.extend(m for m in map(strip_thoughts, model_output) if is_valid_content(m))
    return curated


def remove_unpaired_tool_calls(history: list[Message]) -> list[Message]:
    """Drop function calls that never got a response.

    Calls in the final model message are pending, not unpaired.
    """
    pending_ids: set[str] = set()
    if history and history[-1].role == Role.MODEL:
        pending_ids = {c.id for c in history[-1].function_calls}

    call_ids: set[str] = set()
    response_ids: set[str] = set()
    for message in history:
        for part in message.parts:
            if part.function_call is not None:
                call_ids.add(part.function_call.id)
            if part.function_response is not None:
                response_ids.add(part.function_response.id)

    unpaired = call_ids - response_ids - pending_ids
    if not unpaired:
        return history

    logger.info("Removing %d unpaired tool call(s): %s", len(unpaired), ", ".join(sorted(unpaired)))
    cleaned: list[Message] = []
    for message in history:
        parts = [
            p for p in message.parts
            if not (p.function_call is not None and p.function_call.id in unpaired)
        ]
        if parts:
            cleaned.append(Message(role=message.role, parts=parts))
    return cleaned


def consolidate_parts(parts: list[Part]) -> list[Part]:
    """Merge adjacent plain-text parts with the same thought flag."""
    consolidated: list[Part] = []
    for part in parts:
        last = consolidated[-1] if consolidated else None
        is_text = part.text is not None and part.function_call is None and part.function_response is None
        if (
            last is not None
            and is_text
            and last.text is not None
            and last.function_call is None
            and last.function_response is None
            and last.thought == part.thought
        ):
            last.text += part.text
        else:
            consolidated.append(copy.deepcopy(part))
    return consolidated


# ------------------------------------------------------------------
# ChatSession
# ------------------------------------------------------------------


class ChatSession:
    """One conversation's history plus the send layer around the transport."""

    def __init__(
        self,
        transport: ModelTransport,
        state: SessionState,
        retry_policy: RetryPolicy,
        fallback: FallbackHandler,
        telemetry: TelemetrySink | None = None,
        registry: ToolRegistry | None = None,
        history: list[Message] | None = None,
        system_instruction: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self._transport = transport
        self._state = state
        self._retry = retry_policy
        self._fallback = fallback
        self._telemetry = telemetry or NullTelemetry()
        self._registry = registry
        self._history: list[Message] = list(history or [])
        self.system_instruction = system_instruction
        self.tools: list[dict[str, Any]] = list(tools or [])
        self._send_lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        return self._state.session_id

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Message]:
        """Deep copy of the history, curated or comprehensive."""
        history = extract_curated_history(self._history) if curated else self._history
        return copy.deepcopy(remove_unpaired_tool_calls(history))

    def add_history(self, message: Message) -> None:
        self._history.append(message)

    def set_history(self, history: list[Message]) -> None:
        self._history = list(history)

    def clear_history(self) -> None:
        self._history = []

    def set_tools(self, tools: list[dict[str, Any]]) -> None:
        self.tools = list(tools)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message_stream(
        self,
        model: str,
        parts: list[Part],
        signal: AbortSignal | None,
        prompt_id: str,
        config: GenerateConfig | None = None,
    ) -> AsyncIterator[ChatStreamEvent]:
        """Send parts as a user message and stream the model's reply.

        Sends on one session are serialized. Raises InvalidStreamError
        once the content retry budget is spent, and whatever RetryPolicy
        gave up on for transport failures.
        """
        config = config or GenerateConfig()
        async with self._send_lock:
            length_before = len(self._history)
            self._history.append(Message(role=Role.USER, parts=list(parts)))
            request_contents = self.get_history(curated=True)
            completed = False
            try:
                last_error: InvalidStreamError | None = None
                for attempt in range(INVALID_CONTENT_RETRY_ATTEMPTS):
                    if attempt > 0:
                        yield ChatStreamEvent(ChatEventType.RETRY)
                    try:
                        stream = await self._make_api_call(model, request_contents, signal, config)
                        async with aclosing(self._process_stream(stream)) as chunks:
                            async for chunk in chunks:
                                yield ChatStreamEvent(ChatEventType.CHUNK, chunk)
                        last_error = None
                        break
                    except InvalidStreamError as e:
                        last_error = e
                        if attempt < INVALID_CONTENT_RETRY_ATTEMPTS - 1:
                            delay = INVALID_CONTENT_RETRY_DELAY * (attempt + 1)
                            self._telemetry.record(
                                TelemetryEvent(
                                    type=CONTENT_RETRY,
                                    session_id=self._state.session_id,
                                    data={
                                        "attempt": attempt,
                                        "error_type": e.kind,
                                        "delay_ms": int(delay * 1000),
                                        "model": model,
                                        "prompt_id": prompt_id,
                                    },
                                )
                            )
                            logger.warning("Invalid stream from %s (%s), retrying", model, e.kind)
                            if signal is not None:
                                await signal.sleep(delay)
                            else:
                                await asyncio.sleep(delay)

                if last_error is not None:
                    self._telemetry.record(
                        TelemetryEvent(
                            type=CONTENT_RETRY_FAILURE,
                            session_id=self._state.session_id,
                            data={
                                "total_attempts": INVALID_CONTENT_RETRY_ATTEMPTS,
                                "final_error_type": last_error.kind,
                                "model": model,
                            },
                        )
                    )
                    raise last_error
                completed = True
            finally:
                if not completed:
                    logger.warning(
                        "Stream interrupted, rolling back history from %d to %d entries",
                        len(self._history),
                        length_before,
                    )
                    del self._history[length_before:]

    async def _make_api_call(
        self,
        model: str,
        contents: list[Message],
        signal: AbortSignal | None,
        config: GenerateConfig,
    ) -> AsyncIterator[ModelChunk]:
        model = self._fallback.effective_model(model)

        async def api_call(model_to_use: str) -> AsyncIterator[ModelChunk]:
            if self._state.quota_error_occurred and model_to_use == self._fallback.fallback_model:
                raise TransportError(
                    f"Quota exhausted; submit a new query to continue with {model_to_use}."
                )
            return await self._transport.generate_content_stream(
                model_to_use,
                self.system_instruction,
                self.tools,
                contents,
                config,
                signal,
            )

        return await self._retry.run(api_call, model, signal, on_persistent_429=self._fallback.handle)

    async def _process_stream(self, stream: AsyncIterator[ModelChunk]) -> AsyncIterator[ModelChunk]:
        response_parts: list[Part] = []
        has_tool_call = False
        has_finish_reason = False
        chunk_count = 0

        async with aclosing(self._stop_before_second_mutator(stream)) as chunks:
            async for chunk in chunks:
                chunk_count += 1
                if chunk.finish_reason:
                    has_finish_reason = True
                if chunk.parts:
                    if any(p.function_call is not None for p in chunk.parts):
                        has_tool_call = True
                    response_parts.extend(chunk.parts)
                if chunk.prompt_token_count is not None:
                    self._state.last_prompt_token_count = chunk.prompt_token_count
                yield chunk

        consolidated = consolidate_parts(response_parts)
        response_text = "".join(
            p.text for p in consolidated if p.text and not p.thought
        ).strip()

        if not has_tool_call and (not has_finish_reason or not response_text):
            if not has_finish_reason:
                raise InvalidStreamError(
                    f"Model stream ended without a finish reason ({chunk_count} chunk(s))",
                    InvalidStreamError.NO_FINISH_REASON,
                )
            raise InvalidStreamError(
                f"Model stream ended with empty response text ({chunk_count} chunk(s))",
                InvalidStreamError.NO_RESPONSE_TEXT,
            )

        self._history.append(Message(role=Role.MODEL, parts=consolidated))

    async def _stop_before_second_mutator(
        self, stream: AsyncIterator[ModelChunk]
    ) -> AsyncIterator[ModelChunk]:
        """Cut the response right before a second call to a mutating tool.

        The model gets feedback from one mutation before it issues the next.
        """
        found_mutator = False
        async with aclosing(stream):
            async for chunk in stream:
                kept: list[Part] = []
                for part in chunk.parts:
                    if self._is_mutator_call(part):
                        if found_mutator:
                            yield ModelChunk(
                                parts=kept,
                                finish_reason="STOP",
                                prompt_token_count=chunk.prompt_token_count,
                            )
                            return
                        found_mutator = True
                    kept.append(part)
                yield chunk

    def _is_mutator_call(self, part: Part) -> bool:
        if part.function_call is None or self._registry is None:
            return False
        tool = self._registry.get(part.function_call.name)
        return tool is not None and tool.is_mutator
