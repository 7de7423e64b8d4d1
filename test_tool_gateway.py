from __future__ import annotations

import asyncio
import json
import logging

import pytest

from observability.logger import Observability
from shared.models import ToolResult
from tools.gateway import ToolGateway
from tools.registry import ToolRegistry


class _SyncTool:
    def __init__(self, result):
        self.result = result
        self.calls: list[dict] = []

    def execute(self, parameters):
        self.calls.append(parameters)
        return self.result


class _AsyncTool:
    async def execute(self, parameters):
        return {"success": True, "output": {"values": [[1, 2]], "address": parameters.get("range")}}


class _RaisingTool:
    def execute(self, parameters):
        raise RuntimeError("workbook is locked")


def test_registry_register_lookup_and_unregister():
    registry = ToolRegistry()
    tool = _SyncTool({"success": True})

    registry.register(" excel_read_range ", tool)

    assert registry.get("excel_read_range") is tool
    assert registry.has("excel_read_range") is True
    assert registry.registered_tools == ["excel_read_range"]
    registry.unregister("excel_read_range")
    assert registry.get("excel_read_range") is None

    with pytest.raises(ValueError):
        registry.register("  ", tool)


def test_gateway_normalizes_sync_and_async_results():
    async def _run():
        registry = ToolRegistry()
        sync_tool = _SyncTool({"success": True, "output": "done"})
        registry.register("excel_format_range", sync_tool)
        registry.register("excel_read_range", _AsyncTool())
        registry.register("excel_get_selection", _SyncTool(ToolResult(success=True, output='{"address": "A1"}')))
        gateway = ToolGateway(registry)

        params = {"range": "A1:B1"}
        formatted = await gateway.execute("excel_format_range", params)
        read = await gateway.execute("excel_read_range", {"range": "A1:B1"})
        selection = await gateway.execute("excel_get_selection", {})

        assert formatted == ToolResult(success=True, output="done", error=None)
        assert sync_tool.calls == [params]
        assert sync_tool.calls[0] is not params
        assert json.loads(read.output) == {"values": [[1, 2]], "address": "A1:B1"}
        assert read.structured()["values"] == [[1, 2]]
        assert selection.structured() == {"address": "A1"}

    asyncio.run(_run())


def test_gateway_reports_missing_tools_and_exceptions_as_failures():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_write_range", _RaisingTool())
        registry.register("excel_clear_range", _SyncTool({"success": False, "error": 404}))
        registry.register("excel_odd", _SyncTool(["not", "a", "dict"]))
        gateway = ToolGateway(registry)

        missing = await gateway.execute("excel_delete_rows", {})
        raised = await gateway.execute("excel_write_range", {})
        failed = await gateway.execute("excel_clear_range", {})
        odd = await gateway.execute("excel_odd", {})

        assert gateway.available("excel_delete_rows") is False
        assert missing.success is False
        assert missing.error == "tool not found: excel_delete_rows"
        assert raised.success is False
        assert raised.error == "Tool execution error: workbook is locked"
        assert failed.success is False
        assert failed.error == "404"
        assert odd.success is False
        assert "unsupported result type" in odd.error

    asyncio.run(_run())


def test_structured_output_is_none_for_plain_text():
    assert ToolResult(success=True, output="Sorted 12 rows").structured() is None
    assert ToolResult(success=True).structured() is None


def test_gateway_logs_tool_outcome_with_timing(caplog):
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_clear_range", _SyncTool({"success": False, "error": "sheet is protected"}))
        gateway = ToolGateway(registry, Observability(session_id="s-1", trace_id="t-1"))

        with caplog.at_level(logging.DEBUG, logger="observability"):
            await gateway.execute("excel_clear_range", {"range": "A1:B2"})

        lines = [record.getMessage() for record in caplog.records if record.name == "observability"]
        metric = json.loads(lines[-1])
        assert metric["event"] == "execution_metric"
        assert metric["operation"] == "tool:excel_clear_range"
        assert metric["success"] is True
        assert metric["tool_success"] is False
        assert metric["trace_id"] == "t-1"

    asyncio.run(_run())
