"""Cancellation primitives shared by every suspension point.

One AbortSignal is created per top-level request and handed down to the
model stream, the summary call, the next-speaker call and every tool
execution. AbortController.linked() derives a child controller that
fires when its parent does, so a turn can be aborted on its own (e.g.
on loop detection) without aborting the caller's signal.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from palaver.core.errors import AbortError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortSignal:
    """Read side of a cancellation token."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback on abort (immediately if already aborted).

        Returns a function that unregisters the callback.
        """
        if self._aborted:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return remove

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise AbortError(self._reason or "Operation aborted")

    async def wait(self) -> None:
        """Block until the signal is aborted."""
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """asyncio.sleep that raises AbortError as soon as the signal fires."""
        self.raise_if_aborted()
        if delay <= 0:
            return
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=delay)
        except asyncio.TimeoutError:
            return
        finally:
            if not waiter.done():
                waiter.cancel()
        self.raise_if_aborted()

    def _fire(self, reason: str | None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Abort callback failed")


async def run_abortable(awaitable: Awaitable[T], signal: AbortSignal | None) -> T:
    """Await in the current task, raising AbortError if the signal fires.

    The abort callback cancels the awaiting task only while it is blocked
    here, so an abort issued elsewhere never lands on an unrelated await.
    """
    if signal is None:
        return await awaitable
    if signal.aborted:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        signal.raise_if_aborted()
    task = asyncio.current_task()
    assert task is not None
    remove = signal.add_callback(task.cancel)
    try:
        result = await awaitable
    except asyncio.CancelledError:
        if signal.aborted:
            task.uncancel()
            raise AbortError(signal.reason or "Operation aborted") from None
        raise
    finally:
        remove()
    if signal.aborted and task.cancelling():
        task.uncancel()
        raise AbortError(signal.reason or "Operation aborted")
    return result


class AbortController:
    """Write side of a cancellation token."""

    def __init__(self) -> None:
        self.signal = AbortSignal()
        self._unlinks: list[Callable[[], None]] = []

    def abort(self, reason: str | None = None) -> None:
        self.signal._fire(reason or "Operation aborted")

    @classmethod
    def linked(cls, *parents: AbortSignal) -> AbortController:
        """Controller that also aborts when any parent signal aborts.

        Call detach() once the child's work is over so long-lived parents
        do not keep its callback.
        """
        controller = cls()
        for parent in parents:
            controller._unlinks.append(parent.add_callback(lambda p=parent: controller.abort(p.reason)))
        return controller

    def detach(self) -> None:
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()
