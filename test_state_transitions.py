from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from orchestrator.orchestrator import AgentOrchestrator
from shared.models import (
    ALLOWED_TRANSITIONS,
    CompileResult,
    ExecutionPlan,
    IntentSpec,
    InvalidPhaseTransition,
    ParseContext,
    PlanStep,
    StepResult,
    TaskRunState,
)
from tools.registry import ToolRegistry


def test_happy_path_transitions_are_allowed():
    state = TaskRunState()
    for phase in ("sensing", "parsing", "compiling", "confirming", "executing", "verifying", "fixing",
                  "executing", "verifying", "completed"):
        state.transition(phase)

    assert state.phase == "completed"
    assert state.is_terminal is True


def test_illegal_transition_raises():
    state = TaskRunState()

    with pytest.raises(InvalidPhaseTransition):
        state.transition("executing")
    assert state.phase == "idle"


def test_every_non_terminal_phase_can_fail():
    for phase, targets in ALLOWED_TRANSITIONS.items():
        if phase in ("completed", "failed"):
            assert targets == frozenset()
        else:
            assert "failed" in targets


def test_terminal_state_rejects_mutation():
    state = TaskRunState()
    state.transition("failed")

    with pytest.raises(InvalidPhaseTransition):
        state.transition("sensing")
    with pytest.raises(InvalidPhaseTransition):
        state.record_error("late error")
    with pytest.raises(InvalidPhaseTransition):
        state.add_step_result(StepResult(step_id="s1", action="x", success=True))
    assert state.errors == []
    assert state.step_results == []


def test_run_emits_ordered_phase_events():
    async def _run():
        class _Tool:
            def execute(self, parameters):
                return {"success": True, "output": "ok"}

        class _Compiler:
            def compile(self, intent_spec, compile_context):
                return CompileResult(success=True, plan=ExecutionPlan(steps=[
                    PlanStep(id="s1", order=1, action="excel_format_range", is_write=True),
                ]))

        registry = ToolRegistry()
        registry.register("excel_format_range", _Tool())
        parser = MagicMock()
        parser.parse.return_value = IntentSpec(intent="format")
        orchestrator = AgentOrchestrator(registry, parser, _Compiler())

        await orchestrator.run(ParseContext(user_message="加粗"))

        history = orchestrator.events.history
        phases = [event.data["phase"] for event in history if event.type == "phase_changed"]
        assert phases == ["sensing", "parsing", "compiling", "executing", "verifying", "completed"]
        assert [event.sequence for event in history] == list(range(1, len(history) + 1))
        assert [event.type for event in history if event.type != "phase_changed"] == [
            "intent_parsed",
            "plan_compiled",
            "step_started",
            "step_completed",
            "verification_started",
            "verification_passed",
            "execution_completed",
        ]

    asyncio.run(_run())


def test_listener_failure_does_not_affect_the_run():
    async def _run():
        parser = MagicMock()
        parser.parse.return_value = IntentSpec(intent="clarify", needs_clarification=True, clarification_question="哪一列？")
        orchestrator = AgentOrchestrator(ToolRegistry(), parser, MagicMock())

        def _broken(event):
            raise ValueError("listener bug")

        orchestrator.on("phase_changed", _broken)
        result = await orchestrator.run(ParseContext(user_message="排序"))

        assert result.status == "needs_clarification"
        assert result.message == "哪一列？"

        orchestrator.off("phase_changed", _broken)

    asyncio.run(_run())
