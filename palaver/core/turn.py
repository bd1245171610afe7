"""Turn: one model invocation and its streamed response."""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing

from palaver.core.abort import AbortSignal
from palaver.core.chat import ChatEventType, ChatSession
from palaver.core.errors import AbortError, InvalidStreamError, TransportError
from palaver.core.models import (
    EventType,
    FunctionCall,
    Part,
    StreamEvent,
    StructuredError,
    ThoughtSummary,
    ToolCallRequest,
)
from palaver.events import API_ERROR, NullTelemetry, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

_SUBJECT_RE = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def parse_thought(text: str) -> ThoughtSummary:
    """Split thought text into a subject (first **bold** span) and the rest."""
    match = _SUBJECT_RE.search(text)
    subject = match.group(1).strip() if match else ""
    description = _SUBJECT_RE.sub("", text, count=1).strip()
    return ThoughtSummary(subject=subject, description=description)


class Turn:
    """Runs one send on a ChatSession and translates it into StreamEvents.

    Tool calls seen during the turn accumulate in ``pending_tool_calls``;
    ``finish_reason`` holds the reason reported by the final chunk.
    """

    def __init__(self, chat: ChatSession, prompt_id: str, telemetry: TelemetrySink | None = None) -> None:
        self.chat = chat
        self.prompt_id = prompt_id
        self.pending_tool_calls: list[ToolCallRequest] = []
        self.finish_reason: str | None = None
        self._telemetry = telemetry or NullTelemetry()

    async def run(
        self, model: str, request: list[Part], signal: AbortSignal | None
    ) -> AsyncIterator[StreamEvent]:
        try:
            stream = self.chat.send_message_stream(model, request, signal, self.prompt_id)
            async with aclosing(stream) as events:
                async for event in events:
                    if signal is not None and signal.aborted:
                        yield StreamEvent(EventType.USER_CANCELLED)
                        return

                    if event.type == ChatEventType.RETRY:
                        yield StreamEvent(EventType.RETRY)
                        continue

                    chunk = event.value
                    if chunk is None:
                        continue
                    for part in chunk.parts:
                        if part.thought:
                            if part.text:
                                yield StreamEvent(EventType.THOUGHT, parse_thought(part.text))
                        elif part.function_call is not None:
                            yield self._handle_function_call(part.function_call)
                        elif part.text:
                            yield StreamEvent(EventType.CONTENT, part.text)

                    if chunk.finish_reason:
                        self.finish_reason = chunk.finish_reason
                        yield StreamEvent(EventType.FINISHED, chunk.finish_reason)
        except InvalidStreamError as e:
            logger.warning("Invalid stream in prompt %s: %s", self.prompt_id, e)
            yield StreamEvent(EventType.INVALID_STREAM, e.kind)
        except AbortError:
            yield StreamEvent(EventType.USER_CANCELLED)
        except Exception as e:
            if signal is not None and signal.aborted:
                yield StreamEvent(EventType.USER_CANCELLED)
                return
            status = e.status if isinstance(e, TransportError) else None
            logger.error("Turn failed for prompt %s on %s: %s", self.prompt_id, model, e)
            self._telemetry.record(
                TelemetryEvent(
                    type=API_ERROR,
                    session_id=self.chat.session_id,
                    data={"model": model, "prompt_id": self.prompt_id, "status": status, "error": str(e)},
                )
            )
            yield StreamEvent(EventType.ERROR, StructuredError(message=str(e), status=status))

    def _handle_function_call(self, call: FunctionCall) -> StreamEvent:
        call_id = call.id or f"{call.name}-{uuid.uuid4().hex[:12]}"
        request = ToolCallRequest(
            call_id=call_id,
            name=call.name,
            args=dict(call.args or {}),
            prompt_id=self.prompt_id,
        )
        self.pending_tool_calls.append(request)
        return StreamEvent(EventType.TOOL_CALL_REQUEST, request)
