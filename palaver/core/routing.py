"""Model routing for a new request sequence.

ModelRouter asks each strategy in turn; the first decision wins. The
client locks the result for the rest of the prompt id.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from palaver.config import Settings
from palaver.core.abort import AbortSignal
from palaver.core.errors import AbortError
from palaver.core.models import Message, Part, Role, RoutingDecision
from palaver.core.state import SessionState

logger = logging.getLogger(__name__)

AUTO_MODEL = "auto"

CLASSIFIER_HISTORY_COUNT = 4

CLASSIFIER_PROMPT = """\
You are a routing classifier. Decide whether the user's latest request is \
SIMPLE (a short factual answer, a single small edit, a quick lookup) or \
COMPLEX (multi-step work, debugging, design, anything needing planning or \
several tool calls). When unsure, answer COMPLEX."""

CLASSIFIER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {"type": "string", "description": "One sentence explaining the choice."},
        "complexity": {"type": "string", "enum": ["simple", "complex"]},
    },
    "required": ["reasoning", "complexity"],
}

JsonGenerator = Callable[[list[Message], dict[str, Any], AbortSignal | None, str], Awaitable[dict[str, Any]]]


@dataclass
class RoutingContext:
    history: list[Message]
    request: list[Part]
    signal: AbortSignal | None = None


class RoutingStrategy(Protocol):
    name: str

    async def route(self, context: RoutingContext) -> RoutingDecision | None: ...


class FallbackStrategy:
    """Sessions in fallback mode always get the fallback model."""

    name = "fallback"

    def __init__(self, settings: Settings, state: SessionState) -> None:
        self._settings = settings
        self._state = state

    async def route(self, context: RoutingContext) -> RoutingDecision | None:
        if not self._state.in_fallback_mode:
            return None
        return RoutingDecision(
            model=self._settings.fallback_model,
            reason="Session is in fallback mode",
            source=self.name,
        )


class OverrideStrategy:
    """An explicitly configured model wins over automatic routing."""

    name = "override"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def route(self, context: RoutingContext) -> RoutingDecision | None:
        if self._settings.model == AUTO_MODEL:
            return None
        return RoutingDecision(
            model=self._settings.model,
            reason="Model configured explicitly",
            source=self.name,
        )


class ClassifierStrategy:
    """Asks the lite model whether the request needs the default model."""

    name = "classifier"

    def __init__(self, settings: Settings, generate_json: JsonGenerator) -> None:
        self._settings = settings
        self._generate_json = generate_json

    async def route(self, context: RoutingContext) -> RoutingDecision | None:
        recent = [
            m for m in context.history
            if not m.has_function_call and not m.has_function_response
        ][-CLASSIFIER_HISTORY_COUNT:]
        request_text = "\n".join(p.text for p in context.request if p.text and not p.thought)
        contents = [
            *recent,
            Message(role=Role.USER, parts=[Part(text=f"{CLASSIFIER_PROMPT}\n\nRequest:\n{request_text}")]),
        ]
        try:
            result = await self._generate_json(
                contents, CLASSIFIER_SCHEMA, context.signal, self._settings.lite_model
            )
        except AbortError:
            raise
        except Exception as e:
            logger.warning("Routing classifier failed, deferring: %s", e)
            return None

        complexity = result.get("complexity")
        if complexity == "simple":
            model = self._settings.lite_model
        elif complexity == "complex":
            model = self._settings.default_model
        else:
            return None
        return RoutingDecision(model=model, reason=str(result.get("reasoning", "")), source=self.name)


class DefaultStrategy:
    name = "default"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def route(self, context: RoutingContext) -> RoutingDecision | None:
        return RoutingDecision(
            model=self._settings.default_model,
            reason="Default model",
            source=self.name,
        )


class ModelRouter:
    """Tries strategies in order and returns the first decision."""

    def __init__(self, strategies: list[RoutingStrategy]) -> None:
        if not strategies:
            raise ValueError("ModelRouter needs at least one strategy")
        self._strategies = strategies

    @classmethod
    def default(cls, settings: Settings, state: SessionState, generate_json: JsonGenerator) -> ModelRouter:
        return cls(
            [
                FallbackStrategy(settings, state),
                OverrideStrategy(settings),
                ClassifierStrategy(settings, generate_json),
                DefaultStrategy(settings),
            ]
        )

    async def route(self, context: RoutingContext) -> RoutingDecision:
        for strategy in self._strategies:
            decision = await strategy.route(context)
            if decision is not None:
                logger.debug("Routed to %s via %s: %s", decision.model, decision.source, decision.reason)
                return decision
        raise RuntimeError("No routing strategy produced a decision")
