"""Model fallback after persistent rate limiting."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from palaver.core.state import SessionState
from palaver.events import FLASH_FALLBACK, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

# Host hook: (failed_model, fallback_model, error) -> True to accept the switch
FallbackApproval = Callable[[str, str, Exception], Awaitable[bool]]


class FallbackHandler:
    """Decides whether a session may switch to its fallback model.

    Used as the ``on_persistent_429`` hook of RetryPolicy. Once a session
    is in fallback mode every later call routes to the fallback model,
    so the switch happens at most once per session.
    """

    def __init__(
        self,
        fallback_model: str,
        state: SessionState,
        telemetry: TelemetrySink,
        on_fallback: FallbackApproval | None = None,
    ) -> None:
        self.fallback_model = fallback_model
        self._state = state
        self._telemetry = telemetry
        self._on_fallback = on_fallback

    async def handle(self, failed_model: str, error: Exception) -> str | None:
        if failed_model == self.fallback_model:
            # Nothing cheaper left to try; the sequence stops here.
            self._state.quota_error_occurred = True
            return None
        if self._state.in_fallback_mode:
            return None

        if self._on_fallback is not None:
            try:
                accepted = await self._on_fallback(failed_model, self.fallback_model, error)
            except Exception:
                logger.exception("Fallback approval hook failed")
                accepted = False
            if not accepted:
                self._state.quota_error_occurred = True
                return None

        self._state.in_fallback_mode = True
        self._telemetry.record(
            TelemetryEvent(
                type=FLASH_FALLBACK,
                session_id=self._state.session_id,
                data={"failed_model": failed_model, "fallback_model": self.fallback_model},
            )
        )
        logger.warning(
            "Session %s switched to fallback model %s after persistent rate limiting on %s",
            self._state.session_id,
            self.fallback_model,
            failed_model,
        )
        return self.fallback_model

    __call__ = handle

    def effective_model(self, model: str) -> str:
        """The model a call should actually target given the session's mode."""
        return self.fallback_model if self._state.in_fallback_mode else model
