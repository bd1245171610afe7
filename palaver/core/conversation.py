"""ConversationRunner: drives tool continuations for one session.

ConversationClient stops after each model turn that requests tools.
The runner runs those requests through the session's scheduler, streams
the outcome to the host and sends the responses back under the same
prompt id, until the model hands control back to the user.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing

from palaver.core.abort import AbortController, AbortSignal
from palaver.core.client import ConversationClient
from palaver.core.errors import ToolResponseMismatchError
from palaver.core.models import (
    TERMINAL_EVENTS,
    EventType,
    Message,
    Part,
    Role,
    StreamEvent,
    ToolCallRequest,
)
from palaver.tools.scheduler import ToolCall, ToolCallScheduler, ToolCallStatus

logger = logging.getLogger(__name__)


def new_prompt_id(session_id: str) -> str:
    return f"{session_id}########{uuid.uuid4().hex[:12]}"


def check_response_count(requests: list[ToolCallRequest], completed: list[ToolCall]) -> list[Part]:
    """Response parts for a batch, in request order.

    Raises ToolResponseMismatchError unless every request is answered
    by exactly one function response.
    """
    by_id: dict[str, list[Part]] = {}
    for call in completed:
        parts = call.response.response_parts if call.response else []
        by_id[call.request.call_id] = [p for p in parts if p.function_response is not None]

    response_parts: list[Part] = []
    for request in requests:
        parts = by_id.get(request.call_id, [])
        if len(parts) != 1:
            raise ToolResponseMismatchError(
                f"Tool call {request.call_id} ({request.name}) has {len(parts)} response part(s), expected 1"
            )
        response_parts.extend(parts)
    return response_parts


class ConversationRunner:
    """Client + scheduler loop for one session."""

    def __init__(self, client: ConversationClient, scheduler: ToolCallScheduler) -> None:
        self.client = client
        self.scheduler = scheduler
        self._updates: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._announced: set[str] = set()
        self._host_update = scheduler.on_tool_calls_update
        scheduler.on_tool_calls_update = self._on_tool_calls_update

    def _on_tool_calls_update(self, calls: list[ToolCall]) -> None:
        for call in calls:
            if (
                call.status == ToolCallStatus.AWAITING_APPROVAL
                and call.confirmation_details is not None
                and call.request.call_id not in self._announced
            ):
                self._announced.add(call.request.call_id)
                self._updates.put_nowait(
                    StreamEvent(EventType.TOOL_CALL_CONFIRMATION, call.confirmation_details)
                )
        if self._host_update is not None:
            self._host_update(calls)

    async def run(
        self,
        request: str | list[Part],
        signal: AbortSignal | None = None,
        prompt_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream every event of a user request, tool round trips included."""
        prompt_id = prompt_id or new_prompt_id(self.client.session_id)
        next_request: str | list[Part] = request

        while True:
            tool_requests: list[ToolCallRequest] = []
            stopped = False
            stream = self.client.send_message_stream(next_request, signal, prompt_id)
            async with aclosing(stream) as events:
                async for event in events:
                    yield event
                    if event.type == EventType.TOOL_CALL_REQUEST:
                        tool_requests.append(event.value)
                    elif event.type in TERMINAL_EVENTS:
                        stopped = True

            if stopped or not tool_requests:
                return

            response_parts: list[Part] = []
            async with aclosing(self._run_batch(tool_requests, signal)) as batch_events:
                async for event in batch_events:
                    yield event
                    if event.type == EventType.TOOL_CALL_RESPONSE:
                        response_parts.append(event.value)

            if signal is not None and signal.aborted:
                # Keep history consistent for the next request without another model call
                self.client.add_history(Message(role=Role.USER, parts=response_parts))
                logger.info("Prompt %s cancelled after tool execution", prompt_id)
                return

            next_request = response_parts

    async def _run_batch(
        self, requests: list[ToolCallRequest], signal: AbortSignal | None
    ) -> AsyncIterator[StreamEvent]:
        """Run one batch, yielding confirmations while it runs and one
        tool_call_response event (a function_response Part) per call."""
        controller = AbortController.linked(signal) if signal is not None else AbortController()
        self._announced.clear()
        batch = asyncio.create_task(self.scheduler.run(requests, controller.signal), name="tool-batch")
        getter: asyncio.Task | None = None
        try:
            while not batch.done():
                getter = asyncio.create_task(self._updates.get())
                done, _ = await asyncio.wait({batch, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                else:
                    getter.cancel()
            while not self._updates.empty():
                yield self._updates.get_nowait()

            completed = batch.result()
            for part in check_response_count(requests, completed):
                yield StreamEvent(EventType.TOOL_CALL_RESPONSE, part)
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not batch.done():
                controller.abort("Conversation closed")
                await asyncio.gather(batch, return_exceptions=True)
            controller.detach()
