"""
Fix strategies applied between execution passes.

Strategies are tried in order and the first one that applies wins:
1. skip failed non-write steps
2. re-run environment sensing (only if the context actually changed)
3. swap a failed step's tool for a registered alternative

A strategy that applies leaves the plan ready for another executing pass:
failed steps that will run again are back to `pending` and their stale
results are gone.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from shared.models import ExecutionPlan, PlanStep, TaskRunState
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Tools that accept the same parameters for the same effect.
TOOL_ALTERNATIVES: dict[str, tuple[str, ...]] = {
    "excel_write_range": ("excel_batch_write_optimized",),
    "excel_batch_write_optimized": ("excel_write_range",),
    "excel_sort": ("excel_sort_range",),
    "excel_sort_range": ("excel_sort",),
    "excel_set_formula": ("excel_set_formulas", "excel_smart_formula"),
    "excel_set_formulas": ("excel_batch_formula", "excel_set_formula"),
    "excel_batch_formula": ("excel_set_formulas", "excel_fill_formula"),
    "excel_fill_formula": ("excel_batch_formula",),
    "excel_smart_formula": ("excel_set_formula",),
    "excel_read_range": ("excel_read_selection",),
    "excel_read_selection": ("excel_read_range",),
    "excel_filter": ("excel_apply_filter",),
    "excel_apply_filter": ("excel_filter",),
}

Resense = Callable[[], Awaitable[bool]]


def failed_step_ids(state: TaskRunState) -> list[str]:
    """Steps whose latest result failed or did not verify, in result order."""
    latest: dict[str, bool] = {}
    for result in state.step_results:
        latest[result.step_id] = result.success and result.verified is not False
    return [step_id for step_id, ok in latest.items() if not ok]


def reset_steps(plan: ExecutionPlan, state: TaskRunState, step_ids: list[str]) -> None:
    """Send steps back to `pending` and drop their stale results."""
    targets = set(step_ids)
    for step in plan.steps:
        if step.id in targets and step.status != "skipped":
            step.status = "pending"
    state.step_results = [result for result in state.step_results if result.step_id not in targets]


class RecoveryPlanner:
    """Chooses and applies the first applicable fix strategy."""

    def __init__(self, tool_registry: ToolRegistry, alternatives: dict[str, tuple[str, ...]] | None = None):
        self.tool_registry = tool_registry
        self.alternatives = alternatives if alternatives is not None else TOOL_ALTERNATIVES

    async def apply(self, plan: ExecutionPlan, state: TaskRunState, resense: Resense | None = None) -> str | None:
        """Apply one strategy. Returns its name, or None if nothing applied."""
        failed_ids = failed_step_ids(state)
        failed_steps = [step for step in plan.ordered_steps() if step.id in failed_ids]

        if self.skip_failed_reads(plan, state, failed_steps):
            return "skip_failed_steps"

        if resense is not None and await resense():
            reset_steps(plan, state, failed_ids)
            logger.info("Context refreshed, retrying %d step(s)", len(failed_ids))
            return "resense"

        if self.substitute_tool(plan, state, failed_steps):
            return "substitute_tool"

        return None

    def skip_failed_reads(self, plan: ExecutionPlan, state: TaskRunState, failed_steps: list[PlanStep]) -> bool:
        skippable = [step for step in failed_steps if not step.is_write and not step.critical]
        if not skippable:
            return False
        for step in skippable:
            step.status = "skipped"
            state.caveats.append(f"Step {step.id} ({step.action}) was skipped after failing")
        skipped_ids = {step.id for step in skippable}
        state.step_results = [result for result in state.step_results if result.step_id not in skipped_ids]
        reset_steps(plan, state, [step.id for step in failed_steps if step.id not in skipped_ids])
        logger.info("Skipped failed non-write step(s): %s", sorted(skipped_ids))
        return True

    def substitute_tool(self, plan: ExecutionPlan, state: TaskRunState, failed_steps: list[PlanStep]) -> bool:
        for step in failed_steps:
            for alternative in self.alternatives.get(step.action, ()):
                if alternative == step.action or not self.tool_registry.has(alternative):
                    continue
                logger.info("Swapping tool for step %s: %s -> %s", step.id, step.action, alternative)
                step.action = alternative
                reset_steps(plan, state, [failed.id for failed in failed_steps])
                return True
        return False
