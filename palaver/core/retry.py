"""Exponential backoff around a single model call.

RetryPolicy.run() calls ``call(model)`` until it succeeds, the error is
not retryable, or the attempt budget runs out. After a configurable
number of consecutive 429s it asks ``on_persistent_429`` for a
replacement model, at most once per run.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from palaver.config import Settings
from palaver.core.abort import AbortSignal
from palaver.core.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Async hook: (failed_model, error) -> replacement model or None
PersistentRateLimitHook = Callable[[str, Exception], Awaitable[str | None]]

JITTER = 0.3


def is_retryable(error: BaseException) -> bool:
    """429, 5xx, timeouts and connection failures are worth another try."""
    if isinstance(error, TransportError):
        return error.is_rate_limit or error.is_server_error
    return isinstance(error, (httpx.TimeoutException, httpx.TransportError))


class RetryPolicy:
    """Retries transient failures with jittered exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay: float = 5.0,
        max_delay: float = 30.0,
        persistent_429_threshold: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.persistent_429_threshold = persistent_429_threshold

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            persistent_429_threshold=settings.persistent_429_threshold,
        )

    async def run(
        self,
        call: Callable[[str], Awaitable[T]],
        model: str,
        signal: AbortSignal | None = None,
        on_persistent_429: PersistentRateLimitHook | None = None,
    ) -> T:
        """Run call(model) with retries and return its result.

        Raises the last error when attempts are exhausted, the error is
        not retryable, or AbortError when the signal fires while waiting.
        """
        attempt = 0
        consecutive_429 = 0
        delay = self.initial_delay
        fallback_used = False

        while True:
            attempt += 1
            if signal is not None:
                signal.raise_if_aborted()
            try:
                return await call(model)
            except Exception as e:
                if not is_retryable(e):
                    raise

                is_429 = isinstance(e, TransportError) and e.is_rate_limit
                consecutive_429 = consecutive_429 + 1 if is_429 else 0

                if (
                    is_429
                    and on_persistent_429 is not None
                    and not fallback_used
                    and consecutive_429 >= self.persistent_429_threshold
                ):
                    fallback_used = True
                    replacement = await on_persistent_429(model, e)
                    if replacement:
                        logger.warning(
                            "Persistent rate limiting on %s, switching to %s",
                            model,
                            replacement,
                        )
                        model = replacement
                        attempt = 0
                        consecutive_429 = 0
                        delay = self.initial_delay
                        continue

                if attempt >= self.max_attempts:
                    logger.error(
                        "Model call failed after %d attempts: %s", attempt, e
                    )
                    raise

                wait = self._next_wait(e, delay)
                logger.warning(
                    "Model call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self.max_attempts,
                    wait,
                    e,
                )
                if signal is not None:
                    await signal.sleep(wait)
                else:
                    await asyncio.sleep(wait)
                delay = min(self.max_delay, delay * 2)

    def _next_wait(self, error: Exception, delay: float) -> float:
        if isinstance(error, TransportError) and error.is_rate_limit and error.retry_after:
            return min(error.retry_after, self.max_delay)
        jitter = delay * JITTER * random.uniform(-1, 1)
        return max(0.0, delay + jitter)
