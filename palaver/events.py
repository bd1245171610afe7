"""In-process async telemetry sink for palaver.

Telemetry events are fire-and-forget: record() never blocks and never
raises. Events are queued and dispatched to registered handlers by a
background task; one broken handler never crashes the sink or blocks
other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking a TelemetryEvent
TelemetryHandler = Callable[["TelemetryEvent"], Awaitable[None]]

# Event types emitted by the orchestration core
CHAT_COMPRESSION = "chat_compression"
NEXT_SPEAKER_CHECK = "next_speaker_check"
LOOP_DETECTED = "loop_detected"
MALFORMED_JSON_RESPONSE = "malformed_json_response"
CONTENT_RETRY = "content_retry"
CONTENT_RETRY_FAILURE = "content_retry_failure"
FLASH_FALLBACK = "flash_fallback"
TOOL_CALL = "tool_call"
API_ERROR = "api_error"


@dataclass
class TelemetryEvent:
    """A typed telemetry record."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class TelemetrySink:
    """Fire-and-forget telemetry sink with error isolation.

    record() hands events to a bounded queue; a single worker task
    started by start() delivers them to the handlers registered with
    on(). "*" handlers see every event. stop() lets the worker finish
    what is already queued before it returns.
    """

    def __init__(self, max_queue: int = 1000, enabled: bool = True):
        self._handlers: dict[str, list[TelemetryHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[TelemetryEvent | None] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._enabled = enabled
        self.dropped = 0

    def on(self, event_type: str, handler: TelemetryHandler) -> None:
        self._handlers[event_type].append(handler)

    def record(self, event: TelemetryEvent) -> None:
        """Queue an event without waiting. Drops it when the queue is full."""
        if not self._enabled:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Telemetry queue full, dropped %s (%d dropped so far)", event.type, self.dropped)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain(), name="telemetry-sink")
            logger.info("Telemetry sink started")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        # None marks the end of the stream; everything queued before it is delivered
        await self._queue.put(None)
        await worker
        logger.info("Telemetry sink stopped (%d event(s) dropped)", self.dropped)

    async def _drain(self) -> None:
        while (event := await self._queue.get()) is not None:
            await self._deliver(event)

    async def _deliver(self, event: TelemetryEvent) -> None:
        handlers = self._handlers.get(event.type, []) + self._handlers.get("*", [])
        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Telemetry handler %s failed on %s: %r",
                    getattr(handler, "__qualname__", handler),
                    event.type,
                    result,
                )


class NullTelemetry(TelemetrySink):
    """Sink that drops everything. Default when no sink is wired."""

    def __init__(self) -> None:
        super().__init__(max_queue=1, enabled=False)
