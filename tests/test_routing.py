"""Tests for ModelRouter and its strategies."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from palaver.core.errors import AbortError
from palaver.core.models import FunctionCall, Message, Part, Role, model_message, user_message
from palaver.core.routing import (
    CLASSIFIER_PROMPT,
    ClassifierStrategy,
    DefaultStrategy,
    ModelRouter,
    RoutingContext,
)
from palaver.core.state import SessionState
from tests.conftest import make_settings


def _context(text: str = "fix the bug", history=None) -> RoutingContext:
    return RoutingContext(history=history or [], request=[Part(text=text)])


class TestModelRouter:
    def test_requires_strategies(self):
        with pytest.raises(ValueError):
            ModelRouter([])

    @pytest.mark.asyncio
    async def test_fallback_mode_wins(self):
        settings = make_settings(model="claude-opus-4-1")
        state = SessionState(session_id="s1", in_fallback_mode=True)
        generator = AsyncMock()
        router = ModelRouter.default(settings, state, generator)

        decision = await router.route(_context())

        assert decision.model == settings.fallback_model
        assert decision.source == "fallback"
        generator.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_model_overrides_classifier(self):
        settings = make_settings(model="claude-opus-4-1")
        generator = AsyncMock()
        router = ModelRouter.default(settings, SessionState(session_id="s1"), generator)

        decision = await router.route(_context())

        assert decision.model == "claude-opus-4-1"
        assert decision.source == "override"
        generator.assert_not_awaited()

    @pytest.mark.parametrize(
        "complexity,expected",
        [("simple", "claude-haiku-4-5"), ("complex", "claude-sonnet-4-5")],
    )
    @pytest.mark.asyncio
    async def test_auto_uses_classifier(self, complexity, expected):
        settings = make_settings(model="auto")
        generator = AsyncMock(return_value={"reasoning": "r", "complexity": complexity})
        router = ModelRouter.default(settings, SessionState(session_id="s1"), generator)

        decision = await router.route(_context())

        assert decision.model == expected
        assert decision.source == "classifier"
        _contents, _schema, _signal, model = generator.await_args.args
        assert model == settings.lite_model

    @pytest.mark.asyncio
    async def test_classifier_failure_falls_through_to_default(self):
        settings = make_settings(model="auto")
        generator = AsyncMock(side_effect=ValueError("malformed"))
        router = ModelRouter.default(settings, SessionState(session_id="s1"), generator)

        decision = await router.route(_context())

        assert decision.model == settings.default_model
        assert decision.source == "default"

    @pytest.mark.asyncio
    async def test_unknown_complexity_falls_through(self):
        settings = make_settings(model="auto")
        generator = AsyncMock(return_value={"complexity": "medium"})
        router = ModelRouter([ClassifierStrategy(settings, generator), DefaultStrategy(settings)])

        assert (await router.route(_context())).source == "default"


class TestClassifierStrategy:
    @pytest.mark.asyncio
    async def test_prompt_skips_tool_traffic(self):
        settings = make_settings(model="auto")
        generator = AsyncMock(return_value={"reasoning": "r", "complexity": "simple"})
        history = [
            user_message("one"),
            model_message("two"),
            Message(role=Role.MODEL, parts=[Part(function_call=FunctionCall("c1", "lookup"))]),
            user_message("three"),
            model_message("four"),
            user_message("five"),
        ]

        await ClassifierStrategy(settings, generator).route(_context("rename x", history))

        contents = generator.await_args.args[0]
        assert [m.text for m in contents[:-1]] == ["two", "three", "four", "five"]
        assert contents[-1].text.startswith(CLASSIFIER_PROMPT)
        assert contents[-1].text.endswith("Request:\nrename x")

    @pytest.mark.asyncio
    async def test_abort_propagates(self):
        generator = AsyncMock(side_effect=AbortError("cancelled"))
        with pytest.raises(AbortError):
            await ClassifierStrategy(make_settings(model="auto"), generator).route(_context())
