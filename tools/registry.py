"""
Tool Registry — Maps tool name → executable unit.

Pure lookup, no logic. Passed explicitly to the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Protocol

from shared.models import ToolResult

logger = logging.getLogger(__name__)


class Tool(Protocol):
    """Protocol that all workbook tools must follow."""

    def execute(self, parameters: dict[str, Any]) -> ToolResult | dict[str, Any] | Awaitable[Any]:
        """Execute the tool with given parameters.
        Must return {"success": bool, "output": "...", "error": "..."} or a ToolResult,
        directly or as an awaitable.
        """
        ...


class ToolRegistry:
    """Registry mapping tool names to their implementations."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, name: str, tool: Tool) -> None:
        """Register a tool implementation, replacing any previous one."""
        key = str(name).strip()
        if not key:
            raise ValueError("Tool name must not be empty")
        logger.info("Registered tool: %s → %s", key, type(tool).__name__)
        self._tools[key] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Resolve a tool by name. Returns None if not found."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def registered_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())
