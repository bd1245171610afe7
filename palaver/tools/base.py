"""Tool contract used by the registry and scheduler."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from palaver.core.abort import AbortSignal


class RiskClass(StrEnum):
    NONE = "none"
    EDIT = "edit"
    DESTRUCTIVE = "destructive"


class ToolKind(StrEnum):
    READ = "read"
    EDIT = "edit"
    EXECUTE = "execute"
    OTHER = "other"


# Kinds that change state outside the conversation
MUTATOR_KINDS = frozenset({ToolKind.EDIT, ToolKind.EXECUTE})


@dataclass
class ToolResult:
    """Outcome of one tool execution."""

    success: bool
    output: Any = None
    error: str | None = None
    error_type: str | None = None

    @classmethod
    def ok(cls, output: Any) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, error_type: str = "execution_failed") -> ToolResult:
        return cls(success=False, error=error, error_type=error_type)


ToolExecutor = Callable[[dict[str, Any], AbortSignal | None], Awaitable[ToolResult]]
RiskClassifier = Callable[[dict[str, Any]], RiskClass]


@dataclass(frozen=True)
class ToolHandler:
    """A named tool: JSON schema, executor and risk classification.

    ``risk`` is either a fixed class or a function of the call arguments.
    """

    name: str
    description: str
    schema: dict[str, Any]
    execute: ToolExecutor
    kind: ToolKind = ToolKind.OTHER
    risk: RiskClass | RiskClassifier = RiskClass.NONE

    def classify_risk(self, args: dict[str, Any]) -> RiskClass:
        if callable(self.risk):
            return self.risk(args)
        return self.risk

    def missing_params(self, args: dict[str, Any]) -> list[str]:
        return [name for name in self.schema.get("required", []) if name not in args]

    @property
    def is_mutator(self) -> bool:
        return self.kind in MUTATOR_KINDS

    def definition(self) -> dict[str, Any]:
        """Tool definition in Messages API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.schema,
        }
