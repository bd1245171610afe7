"""Tests for RetryPolicy backoff and the rate-limit fallback handler."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from palaver.core.abort import AbortController
from palaver.core.errors import AbortError, TransportError
from palaver.core.fallback import FallbackHandler
from palaver.core.retry import RetryPolicy, is_retryable
from palaver.core.state import SessionState
from palaver.events import FLASH_FALLBACK
from tests.conftest import RecordingTelemetry, make_settings


def _policy(**kwargs) -> RetryPolicy:
    values = {"max_attempts": 5, "initial_delay": 0.0, "max_delay": 0.0}
    values.update(kwargs)
    return RetryPolicy(**values)


def _rate_limited() -> TransportError:
    return TransportError("rate limited", status=429)


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (TransportError("x", status=429), True),
            (TransportError("x", status=500), True),
            (TransportError("x", status=529), True),
            (TransportError("x", status=400), False),
            (TransportError("x"), False),
            (httpx.ReadTimeout("slow"), True),
            (httpx.ConnectError("refused"), True),
            (ValueError("nope"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_retryable(error) is expected


class TestRetryPolicy:
    def test_requires_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(make_settings(retry_max_attempts=7, persistent_429_threshold=2))
        assert policy.max_attempts == 7
        assert policy.persistent_429_threshold == 2

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        call = AsyncMock(side_effect=[TransportError("down", status=503), _rate_limited(), "ok"])

        assert await _policy().run(call, "claude-sonnet-4-5") == "ok"
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self):
        call = AsyncMock(side_effect=TransportError("bad", status=400))

        with pytest.raises(TransportError):
            await _policy().run(call, "claude-sonnet-4-5")
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        call = AsyncMock(side_effect=TransportError("down", status=500))

        with pytest.raises(TransportError, match="down"):
            await _policy(max_attempts=3).run(call, "claude-sonnet-4-5")
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_persistent_429_switches_model(self):
        call = AsyncMock(side_effect=[_rate_limited(), _rate_limited(), _rate_limited(), "ok"])
        hook = AsyncMock(return_value="claude-haiku-4-5")

        result = await _policy().run(call, "claude-sonnet-4-5", on_persistent_429=hook)

        assert result == "ok"
        hook.assert_awaited_once()
        assert hook.await_args.args[0] == "claude-sonnet-4-5"
        models = [c.args[0] for c in call.await_args_list]
        assert models == ["claude-sonnet-4-5"] * 3 + ["claude-haiku-4-5"]

    @pytest.mark.asyncio
    async def test_declined_fallback_keeps_retrying_until_budget(self):
        call = AsyncMock(side_effect=_rate_limited())
        hook = AsyncMock(return_value=None)

        with pytest.raises(TransportError):
            await _policy(max_attempts=4).run(call, "claude-sonnet-4-5", on_persistent_429=hook)

        hook.assert_awaited_once()
        assert call.await_count == 4

    def test_retry_after_caps_at_max_delay(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0)
        assert policy._next_wait(TransportError("x", status=429, retry_after=4.0), 1.0) == 4.0
        assert policy._next_wait(TransportError("x", status=429, retry_after=60.0), 1.0) == 10.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(initial_delay=2.0, max_delay=30.0)
        for _ in range(50):
            assert 1.4 <= policy._next_wait(TransportError("x", status=500), 2.0) <= 2.6

    @pytest.mark.asyncio
    async def test_abort_during_backoff(self):
        controller = AbortController()

        async def call(model: str) -> str:
            controller.abort("stop")
            raise TransportError("down", status=503)

        with pytest.raises(AbortError):
            await RetryPolicy(initial_delay=10.0, max_delay=10.0).run(
                call, "claude-sonnet-4-5", controller.signal
            )


class TestFallbackHandler:
    @pytest.mark.asyncio
    async def test_switches_once(self):
        state = SessionState(session_id="s1")
        telemetry = RecordingTelemetry()
        handler = FallbackHandler("claude-haiku-4-5", state, telemetry)

        assert await handler.handle("claude-sonnet-4-5", _rate_limited()) == "claude-haiku-4-5"
        assert state.in_fallback_mode
        assert handler.effective_model("claude-sonnet-4-5") == "claude-haiku-4-5"
        assert telemetry.of_type(FLASH_FALLBACK)[0].data == {
            "failed_model": "claude-sonnet-4-5",
            "fallback_model": "claude-haiku-4-5",
        }

        assert await handler.handle("claude-opus-4-1", _rate_limited()) is None
        assert len(telemetry.of_type(FLASH_FALLBACK)) == 1

    @pytest.mark.asyncio
    async def test_failing_fallback_model_sets_quota_flag(self):
        state = SessionState(session_id="s1")
        handler = FallbackHandler("claude-haiku-4-5", state, RecordingTelemetry())

        assert await handler.handle("claude-haiku-4-5", _rate_limited()) is None
        assert state.quota_error_occurred
        assert not state.in_fallback_mode

    @pytest.mark.asyncio
    async def test_host_can_decline(self):
        state = SessionState(session_id="s1")
        approve = AsyncMock(return_value=False)
        handler = FallbackHandler("claude-haiku-4-5", state, RecordingTelemetry(), on_fallback=approve)

        assert await handler.handle("claude-sonnet-4-5", _rate_limited()) is None
        approve.assert_awaited_once()
        assert state.quota_error_occurred
        assert handler.effective_model("claude-sonnet-4-5") == "claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_three_429s_end_to_end(self):
        state = SessionState(session_id="s1")
        handler = FallbackHandler("claude-haiku-4-5", state, RecordingTelemetry())
        call = AsyncMock(side_effect=[_rate_limited(), _rate_limited(), _rate_limited(), "from fallback"])

        result = await _policy().run(call, "claude-sonnet-4-5", on_persistent_429=handler.handle)

        assert result == "from fallback"
        assert state.in_fallback_mode
        assert call.await_args_list[-1].args[0] == "claude-haiku-4-5"
