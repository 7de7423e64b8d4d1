from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

from orchestrator.orchestrator import AgentOrchestrator
from shared.config import OrchestratorConfig
from shared.models import (
    CompileResult,
    ExecutionPlan,
    IntentSpec,
    ParseContext,
    PlanStep,
    SuccessCondition,
)
from tools.registry import ToolRegistry


class _ScriptedTool:
    def __init__(self, *results: dict):
        self.results = list(results)
        self.calls = 0

    def execute(self, parameters):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class _Compiler:
    def __init__(self, plan: ExecutionPlan):
        self.plan = plan

    def compile(self, intent_spec, compile_context):
        return CompileResult(success=True, plan=self.plan)


def _orchestrator(registry: ToolRegistry, plan: ExecutionPlan, **config) -> AgentOrchestrator:
    parser = MagicMock()
    parser.parse.return_value = IntentSpec(intent="write")
    return AgentOrchestrator(registry, parser, _Compiler(plan), config=OrchestratorConfig(**config))


def _write_plan(action: str = "excel_write_range", **step) -> ExecutionPlan:
    return ExecutionPlan(steps=[
        PlanStep(id="w", order=1, action=action, is_write=True, parameters={"range": "D2:D9"}, **step),
    ])


def _failing() -> _ScriptedTool:
    return _ScriptedTool({"success": False, "error": "sheet is protected"})


def test_retry_budget_is_enforced():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_write_range", _failing())
        registry.register("excel_batch_write_optimized", _failing())
        orchestrator = _orchestrator(registry, _write_plan(), max_retries=1)

        result = await orchestrator.run(ParseContext(user_message="写入D列"))

        assert result.success is False
        assert result.message == "Operation failed: execution failed, retry budget exhausted (1)"
        assert result.state.retry_count == 1
        assert result.state.iteration == 2
        assert [r.action for r in result.state.step_results] == ["excel_batch_write_optimized"]

    asyncio.run(_run())


def test_iteration_cap_stops_alternating_substitutions():
    async def _run():
        primary = _failing()
        alternative = _failing()
        registry = ToolRegistry()
        registry.register("excel_write_range", primary)
        registry.register("excel_batch_write_optimized", alternative)
        orchestrator = _orchestrator(registry, _write_plan(), max_retries=10, max_iterations=3)
        strategies: list[str] = []
        orchestrator.on("fix_applied", lambda event: strategies.append(event.data["strategy"]))

        result = await orchestrator.run(ParseContext(user_message="写入D列"))

        assert result.success is False
        assert result.message == "Operation failed: iteration budget exhausted (3)"
        assert result.state.iteration == 3
        assert result.state.retry_count == 3
        assert strategies == ["substitute_tool"] * 3
        assert (primary.calls, alternative.calls) == (2, 1)

    asyncio.run(_run())


def test_auto_fix_disabled_fails_on_first_error():
    async def _run():
        tool = _failing()
        registry = ToolRegistry()
        registry.register("excel_write_range", tool)
        registry.register("excel_batch_write_optimized", _failing())
        orchestrator = _orchestrator(registry, _write_plan(), enable_auto_fix=False)
        retries = MagicMock()
        orchestrator.on("retry_started", retries)

        result = await orchestrator.run(ParseContext(user_message="写入D列"))

        assert result.status == "failed"
        assert result.message == "Operation failed: execution failed, unrecoverable"
        assert result.state.retry_count == 0
        assert tool.calls == 1
        retries.assert_not_called()

    asyncio.run(_run())


def test_substituted_tool_recovers_the_run():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_write_range", _failing())
        registry.register("excel_batch_write_optimized", _ScriptedTool({"success": True, "output": "Wrote 8 cells"}))
        orchestrator = _orchestrator(registry, _write_plan())

        result = await orchestrator.run(ParseContext(user_message="写入D列"))

        assert result.success is True
        assert result.status == "completed"
        assert result.message == "Wrote 8 cells"
        assert result.state.retry_count == 1
        assert result.state.plan.steps[0].action == "excel_batch_write_optimized"

    asyncio.run(_run())


def test_changed_environment_retries_after_resense():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_get_selection", _ScriptedTool(
            {"success": True, "output": {"address": "A1"}},
            {"success": True, "output": {"address": "D2:D9"}},
        ))
        registry.register("excel_read_range", _ScriptedTool(
            {"success": False, "error": "range not found"},
            {"success": True, "output": {"values": [[1]]}},
        ))
        plan = ExecutionPlan(steps=[PlanStep(id="r", order=1, action="excel_read_range", critical=True)])
        orchestrator = _orchestrator(registry, plan)
        strategies: list[str] = []
        orchestrator.on("fix_applied", lambda event: strategies.append(event.data["strategy"]))

        result = await orchestrator.run(ParseContext(user_message="读取选区"))

        assert result.success is True
        assert result.status == "completed"
        assert strategies == ["resense"]
        assert result.state.iteration == 2
        assert len(result.state.step_results) == 1

    asyncio.run(_run())


def test_unverified_write_without_fix_completes_with_caveats():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_write_range", _ScriptedTool({"success": True, "output": "done"}))
        registry.register("excel_read_range", _ScriptedTool({"success": False, "error": "range not found"}))
        plan = _write_plan(success_condition=SuccessCondition(type="range_exists", target_range="Z1:Z2"))
        orchestrator = _orchestrator(registry, plan)
        phases: list[str] = []
        orchestrator.on("phase_changed", lambda event: phases.append(event.data["phase"]))

        result = await orchestrator.run(ParseContext(user_message="写入Z列"))

        assert result.success is True
        assert result.status == "completed_with_caveats"
        assert result.caveats == ["verification did not pass: 1 step(s) failed verification"]
        assert result.state.retry_count == 1
        assert phases[-3:] == ["verifying", "fixing", "completed"]

    asyncio.run(_run())


def test_unverified_write_with_no_retries_left_completes_with_caveats():
    async def _run():
        registry = ToolRegistry()
        registry.register("excel_write_range", _ScriptedTool({"success": True, "output": "done"}))
        registry.register("excel_read_range", _ScriptedTool({"success": False, "error": "range not found"}))
        plan = _write_plan(success_condition=SuccessCondition(type="range_exists", target_range="Z1:Z2"))
        orchestrator = _orchestrator(registry, plan, max_retries=0)

        result = await orchestrator.run(ParseContext(user_message="写入Z列"))

        assert result.status == "completed_with_caveats"
        assert result.state.retry_count == 0
        assert result.state.phase == "completed"

    asyncio.run(_run())
