"""Execution Engine.

Runs one pass over an `ExecutionPlan` and verifies its outcome:
- Steps run strictly in plan order; `skipped` and `done` steps are not re-run.
- A failed write step aborts the pass; other failures let the pass continue.
- Verification re-queries the workbook for declarative success conditions.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from observability.events import EventBus
from shared.models import ExecutionPlan, PlanStep, StepResult, TaskRunState
from tools.gateway import ToolGateway

logger = logging.getLogger(__name__)

READ_RANGE_TOOL = "excel_read_range"
LIST_SHEETS_TOOL = "excel_get_sheets"


@dataclass
class VerificationOutcome:
    passed: bool
    reason: str = ""
    details: list[dict[str, Any]] = field(default_factory=list)


class PlanExecutor:
    """Executes plan steps through the tool gateway and checks their success conditions."""

    def __init__(self, gateway: ToolGateway, events: EventBus | None = None):
        self.gateway = gateway
        self.events = events or EventBus()

    async def execute(self, plan: ExecutionPlan, state: TaskRunState) -> bool:
        """Run one pass. Returns True only if every attempted step succeeded."""
        steps = plan.ordered_steps()
        logger.info("Execution pass started: %d steps (iteration %d)", len(steps), state.iteration)
        all_succeeded = True

        for index, step in enumerate(steps):
            if step.status != "pending":
                continue

            self.events.emit("step_started", {
                "step_id": step.id,
                "action": step.action,
                "description": step.description,
                "index": index,
                "total": len(steps),
            })
            parameters = self._prepare_parameters(step, state)
            started = time.perf_counter()
            tool_result = await self.gateway.execute(step.action, parameters)
            result = StepResult(
                step_id=step.id,
                action=step.action,
                success=tool_result.success,
                output=tool_result.output,
                error=tool_result.error,
                duration=time.perf_counter() - started,
            )
            state.add_step_result(result)

            if result.success:
                step.status = "done"
                self.events.emit("step_completed", {"step_id": step.id, "output": result.output})
                continue

            all_succeeded = False
            self.events.emit("step_failed", {"step_id": step.id, "error": result.error})
            state.record_error(
                f"Step {step.id} ({step.action}) failed: {result.error}",
                details={"step_id": step.id, "action": step.action, "is_write": step.is_write},
            )
            if step.is_write:
                logger.error("Write step %s failed, aborting pass: %s", step.id, result.error)
                return False
            logger.warning("Step %s failed, continuing: %s", step.id, result.error)

        return all_succeeded

    def _prepare_parameters(self, step: PlanStep, state: TaskRunState) -> dict[str, Any]:
        """Copy step parameters, injecting a dependency's `values` as `data`.

        The source is the latest successful result among the steps in `depends_on`.
        """
        parameters = dict(step.parameters)
        if "data" in parameters or not step.depends_on:
            return parameters

        previous = next(
            (
                result
                for result in reversed(state.step_results)
                if result.success and result.step_id in step.depends_on
            ),
            None,
        )
        if previous is None or not previous.output:
            return parameters
        try:
            payload = json.loads(previous.output)
            values = payload.get("values")
        except (TypeError, ValueError, AttributeError):
            logger.debug("Output of step %s is not injectable", previous.step_id)
            return parameters
        if values is not None:
            parameters["data"] = values
        return parameters

    async def verify(self, plan: ExecutionPlan, state: TaskRunState) -> VerificationOutcome:
        failed = [result for result in state.step_results if not result.success]
        if failed:
            return VerificationOutcome(
                passed=False,
                reason=f"{len(failed)} step(s) failed",
                details=[{"step_id": result.step_id, "error": result.error} for result in failed],
            )

        for step in plan.ordered_steps():
            result = self._latest_result(state, step.id)
            if result is None:
                continue
            verified = await self.check_condition(step)
            result.verified = verified
            result.verification_error = None if verified else f"success condition not met: {step.success_condition.type}"

        unverified = [result for result in state.step_results if result.verified is False]
        if unverified:
            return VerificationOutcome(
                passed=False,
                reason=f"{len(unverified)} step(s) failed verification",
                details=[
                    {"step_id": result.step_id, "error": result.verification_error}
                    for result in unverified
                ],
            )
        return VerificationOutcome(passed=True)

    async def check_condition(self, step: PlanStep) -> bool:
        condition = step.success_condition
        if condition.type == "range_exists":
            if not condition.target_range or not self.gateway.available(READ_RANGE_TOOL):
                return True
            params: dict[str, Any] = {"range": condition.target_range}
            if condition.target_sheet:
                params["sheet"] = condition.target_sheet
            result = await self.gateway.execute(READ_RANGE_TOOL, params)
            return result.success

        if condition.type == "sheet_exists":
            if not condition.target_sheet or not self.gateway.available(LIST_SHEETS_TOOL):
                return True
            result = await self.gateway.execute(LIST_SHEETS_TOOL, {})
            if not result.success:
                return False
            return condition.target_sheet in sheet_names(result.structured())

        return True

    @staticmethod
    def _latest_result(state: TaskRunState, step_id: str) -> StepResult | None:
        for result in reversed(state.step_results):
            if result.step_id == step_id:
                return result
        return None


def sheet_names(payload: Any) -> list[str]:
    """Sheet names from a sheet-listing payload (`{"sheets": [...]}` or a bare list)."""
    sheets = payload.get("sheets") if isinstance(payload, dict) else payload
    if not isinstance(sheets, list):
        return []
    names: list[str] = []
    for sheet in sheets:
        if isinstance(sheet, str):
            names.append(sheet)
        elif isinstance(sheet, dict) and sheet.get("name"):
            names.append(str(sheet["name"]))
    return names
