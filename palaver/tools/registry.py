"""Closed tool registry with role profiles as data."""

from __future__ import annotations

import logging
from typing import Any

from palaver.tools.base import ToolHandler

logger = logging.getLogger(__name__)

# Role -> tool names available to it. "*" means every registered tool.
ROLE_TOOLS: dict[str, frozenset[str]] = {
    "software_engineer": frozenset({"*"}),
    "office_assistant": frozenset({"read_file", "write_file", "bash"}),
    "translator": frozenset({"read_file", "write_file"}),
    "creative_writer": frozenset({"read_file", "write_file"}),
    "financial_analyst": frozenset({"read_file", "bash"}),
}


def role_allows(role: str, name: str) -> bool:
    allowed = ROLE_TOOLS.get(role, frozenset())
    return "*" in allowed or name in allowed


class ToolRegistry:
    """name -> ToolHandler, built once at startup."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        if handler.name in self._tools:
            raise ValueError(f"Tool already registered: {handler.name}")
        self._tools[handler.name] = handler
        logger.debug("Registered tool %s (%s)", handler.name, handler.kind)

    def get(self, name: str) -> ToolHandler | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in Messages API format."""
        return [tool.definition() for tool in self._tools.values()]

    def available_tools(self, role: str) -> list[dict[str, Any]]:
        """Tool definitions filtered by role. Unknown roles get no tools."""
        return [tool.definition() for name, tool in self._tools.items() if role_allows(role, name)]

    def get_for_role(self, name: str, role: str) -> ToolHandler | None:
        """The handler for ``name`` if the role may call it."""
        if not role_allows(role, name):
            return None
        return self._tools.get(name)
