"""Tests for ClientPool: LRU capacity, idle sweep and release."""

from __future__ import annotations

import pytest

from palaver.core.abort import AbortController
from palaver.core.pool import ClientPool
from tests.conftest import FakeTransport, make_settings


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _pool(registry, clock=None, **overrides) -> ClientPool:
    return ClientPool(
        make_settings(**overrides),
        FakeTransport(),
        registry,
        clock=clock or FakeClock(),
    )


def test_get_or_create_reuses_session(registry):
    pool = _pool(registry)

    first = pool.get_or_create("a")
    second = pool.get_or_create("a")

    assert first is second
    assert len(pool) == 1
    assert first.client.session_id == "a"
    assert first.runner.scheduler is first.scheduler


def test_sessions_are_isolated(registry):
    pool = _pool(registry)

    a = pool.get_or_create("a")
    b = pool.get_or_create("b")

    assert a.client is not b.client
    assert a.client.state is not b.client.state


def test_lru_eviction(registry):
    pool = _pool(registry, max_clients=2)
    pool.get_or_create("a")
    pool.get_or_create("b")

    pool.get_or_create("a")  # a becomes most recently used
    pool.get_or_create("c")

    assert "a" in pool
    assert "b" not in pool
    assert "c" in pool


@pytest.mark.asyncio
async def test_busy_sessions_are_not_evicted(registry):
    pool = _pool(registry, max_clients=1)
    a = pool.get_or_create("a")

    async with a.lock:
        pool.get_or_create("b")
        assert "a" in pool
        assert "b" in pool


def test_evict_idle(registry):
    clock = FakeClock()
    pool = _pool(registry, clock=clock, client_idle_timeout=60)
    pool.get_or_create("old")
    clock.advance(45)
    pool.get_or_create("fresh")
    clock.advance(30)

    assert pool.evict_idle() == 1
    assert "old" not in pool
    assert "fresh" in pool


def test_touch_uses_pool_clock(registry):
    clock = FakeClock()
    pool = _pool(registry, clock=clock, client_idle_timeout=60)
    session = pool.get_or_create("a")
    clock.advance(50)
    session.touch()
    clock.advance(50)

    assert pool.evict_idle() == 0


@pytest.mark.asyncio
async def test_evict_idle_skips_busy(registry):
    clock = FakeClock()
    pool = _pool(registry, clock=clock, client_idle_timeout=10)
    session = pool.get_or_create("a")
    clock.advance(100)

    async with session.lock:
        assert pool.evict_idle() == 0
    assert pool.evict_idle() == 1


def test_release_cancels_active_request(registry):
    pool = _pool(registry)
    session = pool.get_or_create("a")
    controller = AbortController()
    session.active = controller

    assert pool.release("a")
    assert controller.signal.aborted
    assert not pool.release("a")


@pytest.mark.asyncio
async def test_start_and_stop(registry):
    pool = _pool(registry)
    pool.get_or_create("a")

    await pool.start()
    await pool.stop()

    assert len(pool) == 0
