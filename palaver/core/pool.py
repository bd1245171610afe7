"""ClientPool: one ConversationClient per session id.

Bounded LRU of live sessions plus a background sweep that releases
sessions idle for longer than ``client_idle_timeout``. Sessions share
only immutable collaborators (settings, transport, registry, telemetry).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from palaver.config import Settings
from palaver.core.abort import AbortController
from palaver.core.client import ConversationClient
from palaver.core.conversation import ConversationRunner
from palaver.core.fallback import FallbackApproval
from palaver.events import NullTelemetry, TelemetrySink
from palaver.tools.registry import ToolRegistry
from palaver.tools.scheduler import ApprovalHandler, ToolCallScheduler
from palaver.transport.base import ModelTransport

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60  # seconds


@dataclass
class Session:
    """Everything stateful for one session id."""

    session_id: str
    client: ConversationClient
    scheduler: ToolCallScheduler
    runner: ConversationRunner
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_used: float = field(default_factory=time.monotonic)
    active: AbortController | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def touch(self) -> None:
        self.last_used = self.clock()

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def cancel(self, reason: str = "Session released") -> None:
        if self.active is not None:
            self.active.abort(reason)


class ClientPool:
    def __init__(
        self,
        settings: Settings,
        transport: ModelTransport,
        registry: ToolRegistry,
        telemetry: TelemetrySink | None = None,
        approval_handler: ApprovalHandler | None = None,
        on_fallback: FallbackApproval | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._registry = registry
        self._telemetry = telemetry or NullTelemetry()
        self._approval_handler = approval_handler
        self._on_fallback = on_fallback
        self._clock = clock
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        """Existing session (marked most recently used) or a fresh one."""
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
            session.touch()
            return session

        self._evict_for_capacity()
        session = self._create(session_id)
        self._sessions[session_id] = session
        logger.info("Created session %s (%d live)", session_id, len(self._sessions))
        return session

    def _create(self, session_id: str) -> Session:
        client = ConversationClient(
            self._settings,
            self._transport,
            self._registry,
            session_id,
            telemetry=self._telemetry,
            on_fallback=self._on_fallback,
        )
        scheduler = ToolCallScheduler(
            self._registry,
            client.state,
            telemetry=self._telemetry,
            approval_handler=self._approval_handler,
        )
        return Session(
            session_id=session_id,
            client=client,
            scheduler=scheduler,
            runner=ConversationRunner(client, scheduler),
            last_used=self._clock(),
            clock=self._clock,
        )

    def _evict_for_capacity(self) -> None:
        while len(self._sessions) >= self._settings.max_clients:
            victim = next((s for s in self._sessions.values() if not s.busy), None)
            if victim is None:
                logger.warning(
                    "All %d sessions are busy, exceeding max_clients", len(self._sessions)
                )
                return
            logger.info("Evicting least recently used session %s", victim.session_id)
            self.release(victim.session_id)

    def release(self, session_id: str) -> bool:
        """Drop a session, cancelling whatever it is running."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel()
        return True

    def evict_idle(self) -> int:
        """Release idle sessions that are not running a request."""
        now = self._clock()
        expired = [
            s.session_id
            for s in self._sessions.values()
            if not s.busy and now - s.last_used > self._settings.client_idle_timeout
        ]
        for session_id in expired:
            logger.info("Session %s idle, releasing", session_id)
            self.release(session_id)
        return len(expired)

    async def start(self) -> None:
        self._task = asyncio.create_task(self._sweep_loop(), name="client-pool-sweep")
        logger.info(
            "Client pool started (max=%d, idle=%ds)",
            self._settings.max_clients,
            self._settings.client_idle_timeout,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for session_id in list(self._sessions):
            self.release(session_id)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(SWEEP_INTERVAL)
                self.evict_idle()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Client pool sweep failed")
