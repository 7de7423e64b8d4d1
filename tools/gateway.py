"""
Tool Gateway — Controls access to workbook tools.

Responsibility:
- Resolve tools via ToolRegistry
- Execute tools through controlled access (sync or async)
- Normalize every outcome to a ToolResult

Prohibitions:
- No retry decisions
- No plan or risk logic
"""

import inspect
import json
import logging
from typing import Any

from observability.logger import Observability
from shared.models import ToolResult
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def tool_not_found_error(tool_name: str) -> str:
    return f"tool not found: {tool_name}"


class ToolGateway:
    """Controlled access layer to tool implementations."""

    def __init__(self, tool_registry: ToolRegistry, observability: Observability | None = None):
        self.tool_registry = tool_registry
        self.observability = observability

    def available(self, tool_name: str) -> bool:
        return self.tool_registry.get(tool_name) is not None

    async def execute(self, tool_name: str, parameters: dict[str, Any]) -> ToolResult:
        """
        Execute a tool by name with given parameters.
        Returns a ToolResult; missing tools and raised exceptions become failed results.
        """
        tool = self.tool_registry.get(tool_name)
        if tool is None:
            logger.warning("Tool not found: %s", tool_name)
            return ToolResult(success=False, output="", error=tool_not_found_error(tool_name))

        try:
            if self.observability is not None:
                with self.observability.measure(f"tool:{tool_name}") as metric:
                    result = self._normalize(await self._invoke(tool, parameters))
                    metric["tool_success"] = result.success
            else:
                result = self._normalize(await self._invoke(tool, parameters))
        except Exception as e:
            logger.exception("Tool '%s' execution failed", tool_name)
            return ToolResult(success=False, output="", error=f"Tool execution error: {e}")

        if result.success:
            logger.info("Tool '%s' executed successfully", tool_name)
        else:
            logger.info("Tool '%s' reported failure: %s", tool_name, result.error)
        return result

    @staticmethod
    async def _invoke(tool: Any, parameters: dict[str, Any]) -> Any:
        outcome = tool.execute(dict(parameters))
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    @staticmethod
    def _normalize(raw: Any) -> ToolResult:
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, dict):
            output = raw.get("output")
            if output is not None and not isinstance(output, str):
                output = json.dumps(output, ensure_ascii=False, default=str)
            error = raw.get("error")
            return ToolResult(
                success=bool(raw.get("success", False)),
                output=output,
                error=str(error) if error is not None else None,
            )
        return ToolResult(
            success=False,
            output="",
            error=f"Tool returned unsupported result type: {type(raw).__name__}",
        )
