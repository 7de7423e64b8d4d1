"""
Orchestrator — Closed-loop controller for one spreadsheet task.

Responsibility:
- Drive sense → parse → compile → [confirm] → execute ⇄ verify ⇄ fix → complete
- Pause at the confirmation/approval boundary and resume on request
- Hand clean runs to Episodic Memory for learning

Prohibitions:
- No intent extraction (Intent Parser)
- No plan construction (Spec Compiler)
- No workbook mutation outside the Tool Registry
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from approval.gate import ApprovalGate
from execution.engine import PlanExecutor, sheet_names
from execution.recovery import RecoveryPlanner
from memory.episodic import EpisodicMemory
from observability.events import ALL_EVENTS, EventBus, Listener
from observability.logger import Observability
from shared.config import OrchestratorConfig
from shared.contracts import IntentParser, SpecCompiler
from shared.models import (
    AgentPhase,
    ApprovalRequest,
    CompileContext,
    EpisodeContext,
    ExecutionPlan,
    IntentSpec,
    OrchestratorResult,
    ParseContext,
    ReusableExperience,
    RunStatus,
    SelectionInfo,
    TaskRunState,
    WorkbookSummary,
    utc_now,
)
from shared.response_formatter import (
    clarification_message,
    completion_message,
    confirmation_question,
    failure_message,
    summarize_output,
)
from tools.gateway import ToolGateway
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SELECTION_TOOL = "excel_get_selection"
SHEETS_TOOL = "excel_get_sheets"

# Optional intent refinements dropped by the compile fallback.
FALLBACK_SPEC_FIELDS = ("format", "validation")


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AgentOrchestrator:
    """Runs one task at a time through the closed loop. Never raises from its public entry points."""

    def __init__(
        self,
        tool_registry: ToolRegistry,
        intent_parser: IntentParser,
        spec_compiler: SpecCompiler,
        memory: EpisodicMemory | None = None,
        approval_gate: ApprovalGate | None = None,
        config: OrchestratorConfig | None = None,
        event_bus: EventBus | None = None,
        observability: Observability | None = None,
    ):
        self._tool_registry = tool_registry
        self.intent_parser = intent_parser
        self.spec_compiler = spec_compiler
        self._memory = memory
        self._approval_gate = approval_gate
        self._config = config or OrchestratorConfig()
        self.events = event_bus or EventBus()
        self.observability = observability or Observability()
        self.events.on(ALL_EVENTS, self.observability.event_listener())

        self.gateway = ToolGateway(tool_registry, self.observability)
        self.executor = PlanExecutor(self.gateway, self.events)
        self.recovery = RecoveryPlanner(tool_registry)

        self._active: TaskRunState | None = None
        self._paused: tuple[TaskRunState, ParseContext] | None = None

    # ─── Accessors ───────────────────────────────────────────

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def phase(self) -> AgentPhase:
        if self._active is None or self._active.is_terminal:
            return "idle"
        return self._active.phase

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._tool_registry

    @property
    def memory(self) -> EpisodicMemory | None:
        return self._memory

    @property
    def approval_gate(self) -> ApprovalGate | None:
        return self._approval_gate

    def update_config(self, **changes: Any) -> None:
        self._config = self._config.model_copy(update=changes)

    def on(self, event_type: str, handler: Listener) -> None:
        self.events.on(event_type, handler)

    def off(self, event_type: str, handler: Listener) -> None:
        self.events.off(event_type, handler)

    # ─── Public entry points ─────────────────────────────────

    async def run(self, context: ParseContext) -> OrchestratorResult:
        """Run the full loop for one request."""
        state = TaskRunState()
        self._active = state
        self._paused = None
        self.gateway.observability = self.observability.span()
        self.gateway.observability.log_event("run_started", {"user_message": context.user_message[:200]})
        logger.info("Agent run started: %s", context.user_message[:80])

        try:
            result = await self._run(state, context)
        except Exception as e:
            logger.exception("Agent run crashed in phase %s", state.phase)
            result = self._crash_result(state, e)

        self._finish(result)
        return result

    async def confirm_and_execute(
        self,
        state: TaskRunState,
        context: ParseContext,
        confirmation_text: str | None = None,
    ) -> OrchestratorResult:
        """Resume a run paused in `confirming`, starting from `executing`."""
        if state.phase != "confirming":
            if state.is_terminal:
                return OrchestratorResult(
                    success=False,
                    status="failed",
                    message=failure_message(f"run already {state.phase}"),
                    state=state,
                )
            return self._fail(state, "run is not awaiting confirmation")

        self._active = state
        self._paused = None
        try:
            rejection = self._decide_approvals(state, context, confirmation_text)
            if rejection is not None:
                result = rejection
            else:
                result = await self._execute_loop(state, context)
        except Exception as e:
            logger.exception("Agent run crashed in phase %s", state.phase)
            result = self._crash_result(state, e)

        self._finish(result)
        return result

    def cancel(self) -> OrchestratorResult | None:
        """Abandon the paused run, if any, and return to idle. In-flight tool calls are not interrupted."""
        paused = self._paused
        self._paused = None
        self._active = None
        if paused is None:
            return None

        state, _ = paused
        self._reject_pending(state, reason="cancelled")
        if state.is_terminal:
            return None
        state.record_error("cancelled", recoverable=False)
        logger.info("Paused run cancelled")
        return self._fail(state, "cancelled", status="cancelled", recorded=True)

    # ─── Loop ────────────────────────────────────────────────

    async def _run(self, state: TaskRunState, context: ParseContext) -> OrchestratorResult:
        self._set_phase(state, "sensing")
        context = await self._sense(context)
        self._memory_hint(context.user_message)

        self._set_phase(state, "parsing")
        intent_spec: IntentSpec = await _resolve(self.intent_parser.parse(context))
        state.intent_spec = intent_spec
        self.events.emit("intent_parsed", {
            "intent": intent_spec.intent,
            "confidence": intent_spec.confidence,
        })

        if intent_spec.needs_clarification:
            return self._clarification_result(state, intent_spec)

        self._set_phase(state, "compiling")
        plan, error = await self._compile(state, intent_spec, context)
        if plan is None:
            return self._fail(state, error or "unable to build an execution plan")

        state.plan = plan
        self.events.emit("plan_compiled", {
            "plan_id": plan.id,
            "step_count": len(plan.steps),
            "description": plan.task_description,
        })

        paused = self._pause_for_confirmation(state, context, plan)
        if paused is not None:
            return paused

        return await self._execute_loop(state, context)

    async def _execute_loop(self, state: TaskRunState, context: ParseContext) -> OrchestratorResult:
        plan = state.plan
        if plan is None:
            return self._fail(state, "no execution plan")

        while True:
            if state.iteration >= self._config.max_iterations:
                return self._fail(state, f"iteration budget exhausted ({self._config.max_iterations})")
            state.iteration += 1
            logger.info(
                "Iteration %d, retry %d/%d",
                state.iteration,
                state.retry_count,
                self._config.max_retries,
            )

            self._set_phase(state, "executing")
            executed = await self.executor.execute(plan, state)

            if not executed:
                if not self._config.enable_auto_fix:
                    return self._fail(state, "execution failed, unrecoverable")
                if state.retry_count >= self._config.max_retries:
                    return self._fail(state, f"execution failed, retry budget exhausted ({self._config.max_retries})")
                self._start_retry(state, "execution failed")
                applied, context = await self._apply_fix(state, context)
                if applied:
                    continue
                return self._fail(state, "execution failed, unrecoverable")

            self._set_phase(state, "verifying")
            self.events.emit("verification_started", {"iteration": state.iteration})
            verification = await self.executor.verify(plan, state)
            if verification.passed:
                self.events.emit("verification_passed", {"iteration": state.iteration})
                return self._complete(state, context)

            self.events.emit("verification_failed", {
                "reason": verification.reason,
                "details": verification.details,
            })
            state.record_error(f"verification failed: {verification.reason}", details=verification.details)

            if self._config.enable_auto_fix and state.retry_count < self._config.max_retries:
                self._start_retry(state, verification.reason)
                applied, context = await self._apply_fix(state, context)
                if applied:
                    continue

            logger.warning("Verification did not pass, returning best-effort result: %s", verification.reason)
            state.caveats.append(f"verification did not pass: {verification.reason}")
            return self._complete(state, context)

    def _start_retry(self, state: TaskRunState, reason: str) -> None:
        state.retry_count += 1
        self.events.emit("retry_started", {"retry_count": state.retry_count, "reason": reason})
        self._set_phase(state, "fixing")

    async def _apply_fix(self, state: TaskRunState, context: ParseContext) -> tuple[bool, ParseContext]:
        refreshed: list[ParseContext] = []

        async def resense() -> bool:
            candidate = await self._sense(context, force=True)
            if _environment(candidate) == _environment(context):
                return False
            refreshed.append(candidate)
            return True

        strategy = await self.recovery.apply(state.plan, state, resense)
        if strategy is None:
            logger.info("No fix strategy applies")
            return False, context
        self.events.emit("fix_applied", {"strategy": strategy, "retry_count": state.retry_count})
        return True, refreshed[-1] if refreshed else context

    # ─── Phases ──────────────────────────────────────────────

    async def _sense(self, context: ParseContext, force: bool = False) -> ParseContext:
        """Fill in missing environment facts; lookup failures are never fatal."""
        updates: dict[str, Any] = {}

        if force or context.selection is None:
            payload = await self._lookup(SELECTION_TOOL)
            if isinstance(payload, dict):
                try:
                    updates["selection"] = SelectionInfo(
                        address=str(payload.get("address") or ""),
                        values=payload.get("values"),
                        row_count=payload.get("row_count", payload.get("rowCount")),
                        column_count=payload.get("column_count", payload.get("columnCount")),
                    )
                except ValueError as exc:
                    logger.warning("Ignoring malformed selection payload: %s", exc)

        if force or not context.active_sheet or context.workbook_summary is None:
            payload = await self._lookup(SHEETS_TOOL)
            if isinstance(payload, dict):
                updates["active_sheet"] = (
                    payload.get("active_sheet") or payload.get("activeSheet") or context.active_sheet
                )
                tables = payload.get("tables")
                updates["workbook_summary"] = WorkbookSummary(
                    sheet_names=sheet_names(payload),
                    table_names=[str(name) for name in tables] if isinstance(tables, list) else [],
                )

        if not updates:
            return context
        return context.model_copy(update=updates)

    async def _lookup(self, tool_name: str) -> Any:
        if not self.gateway.available(tool_name):
            return None
        result = await self.gateway.execute(tool_name, {})
        if not result.success:
            logger.warning("Sensing lookup %s failed: %s", tool_name, result.error)
            return None
        return result.structured()

    def _memory_hint(self, user_message: str) -> None:
        if self._memory is None:
            return
        similar = self._memory.find_similar(user_message, 3)
        if not similar:
            return
        logger.info("Found %d similar episode(s)", len(similar))
        self.events.emit("memory_hint", {
            "episodes": [
                {"id": episode.id, "user_request": episode.user_request, "outcome": episode.outcome}
                for episode in similar
            ],
        })

    async def _compile(
        self,
        state: TaskRunState,
        intent_spec: IntentSpec,
        context: ParseContext,
    ) -> tuple[ExecutionPlan | None, str | None]:
        compile_context = CompileContext(
            current_selection=context.selection.address if context.selection else None,
            active_sheet=context.active_sheet,
        )
        result = await _resolve(self.spec_compiler.compile(intent_spec, compile_context))
        if result.success and result.plan is not None:
            return result.plan, None

        error = result.error or "unable to build an execution plan"
        state.record_error(error)
        simplified = {key: value for key, value in intent_spec.spec.items() if key not in FALLBACK_SPEC_FIELDS}
        if len(simplified) == len(intent_spec.spec):
            return None, error

        logger.info("Compile failed, retrying without %s", ", ".join(FALLBACK_SPEC_FIELDS))
        fallback = await _resolve(
            self.spec_compiler.compile(intent_spec.model_copy(update={"spec": simplified}), compile_context)
        )
        if fallback.success and fallback.plan is not None:
            logger.info("Fallback compile succeeded")
            return fallback.plan, None
        return None, fallback.error or error

    def _pause_for_confirmation(
        self,
        state: TaskRunState,
        context: ParseContext,
        plan: ExecutionPlan,
    ) -> OrchestratorResult | None:
        write_steps = plan.write_steps
        if not write_steps:
            return None

        requests: list[ApprovalRequest] = []
        if self._approval_gate is not None:
            risk_context: dict[str, Any] = {"user_input": context.user_message}
            if context.selection is not None and context.selection.row_count:
                risk_context["estimated_rows"] = context.selection.row_count
            for step in write_steps:
                assessment = self._approval_gate.assess_risk(step.action, step.parameters, risk_context)
                if not assessment.needs_approval:
                    continue
                request = self._approval_gate.create_approval_request(
                    step.action,
                    "write",
                    step.parameters,
                    assessment,
                    user_id=context.user_id,
                    session_id=context.session_id,
                    step_id=step.id,
                )
                requests.append(request)
                state.pending_approvals.append(request.approval_id)
                self.events.emit("approval_requested", {
                    "approval_id": request.approval_id,
                    "step_id": step.id,
                    "risk_level": assessment.risk_level.value,
                })

        if not requests and not self._config.confirm_before_write:
            return None

        self._set_phase(state, "confirming")
        self._paused = (state, context)
        if requests:
            status: RunStatus = "needs_approval"
            question = "\n\n".join(self._approval_gate.generate_confirmation_message(request) for request in requests)
        else:
            status = "needs_confirmation"
            question = confirmation_question(len(write_steps))
        return OrchestratorResult(
            success=True,
            status=status,
            message=question,
            state=state,
            needs_confirmation=True,
            confirmation_question=question,
            approval_requests=requests,
        )

    def _decide_approvals(
        self,
        state: TaskRunState,
        context: ParseContext,
        confirmation_text: str | None,
    ) -> OrchestratorResult | None:
        """Grant every pending approval of the run. Returns a failed result if any cannot be granted."""
        gate = self._approval_gate
        if not state.pending_approvals or gate is None:
            return None

        if confirmation_text is not None:
            lines = [line for line in confirmation_text.splitlines() if line.strip()]
            for approval_id in state.pending_approvals:
                if not any(gate.validate_confirmation_text(line, approval_id) for line in lines):
                    self._reject_pending(state, reason="confirmation text mismatch")
                    return self._fail(state, f"confirmation text does not match {approval_id}")

        # nothing is granted unless every id can still be granted
        for approval_id in state.pending_approvals:
            if gate.expire_if_due(approval_id):
                error = f"Approval request expired: {approval_id}"
            elif gate.get_pending_approval(approval_id) is None:
                error = f"Approval request not found: {approval_id}"
            else:
                continue
            self._reject_pending(state, reason=f"run aborted: {error}")
            return self._fail(state, error)

        decided_by = context.user_id or "user"
        for approval_id in list(state.pending_approvals):
            outcome = gate.handle_approval_decision(approval_id, True, decided_by=decided_by)
            state.pending_approvals.remove(approval_id)
            if not outcome.success:
                self._reject_pending(state, reason="approval failed")
                return self._fail(state, outcome.error or f"approval failed: {approval_id}")
        return None

    def _reject_pending(self, state: TaskRunState, reason: str) -> None:
        gate = self._approval_gate
        if gate is not None:
            for approval_id in state.pending_approvals:
                if gate.get_pending_approval(approval_id) is not None:
                    gate.handle_approval_decision(approval_id, False, reason=reason)
        state.pending_approvals.clear()

    # ─── Results ─────────────────────────────────────────────

    def _set_phase(self, state: TaskRunState, phase: AgentPhase) -> None:
        state.transition(phase)
        self.events.emit("phase_changed", {"phase": phase, "iteration": state.iteration})

    def _clarification_result(self, state: TaskRunState, intent_spec: IntentSpec) -> OrchestratorResult:
        question = clarification_message(intent_spec.clarification_question)
        state.end_time = utc_now()
        state.final_response = question
        self._set_phase(state, "completed")
        return OrchestratorResult(
            success=True,
            status="needs_clarification",
            message=question,
            state=state,
            needs_clarification=True,
            clarification_question=question,
        )

    def _complete(self, state: TaskRunState, context: ParseContext) -> OrchestratorResult:
        state.end_time = utc_now()
        successful = [result for result in state.step_results if result.success]
        message = completion_message(successful, state.elapsed_seconds())
        state.final_response = message
        status: RunStatus = "completed_with_caveats" if state.caveats else "completed"

        experiences = self._learn(state, context)
        self._set_phase(state, "completed")
        self.events.emit("execution_completed", {
            "status": status,
            "step_count": len(successful),
            "duration": state.elapsed_seconds(),
        })
        return OrchestratorResult(
            success=True,
            status=status,
            message=message,
            state=state,
            experiences=experiences,
            caveats=list(state.caveats),
        )

    def _learn(self, state: TaskRunState, context: ParseContext) -> list[ReusableExperience]:
        """Record a clean run as an episode and mine it. Runs with any recorded error are not learned from."""
        memory = self._memory
        if not self._config.enable_learning or memory is None or state.plan is None or state.errors:
            return []

        selection = context.selection
        memory.start_episode(
            context.user_message,
            EpisodeContext(
                sheet_name=context.active_sheet,
                range=selection.address if selection else None,
                data_size=selection.row_count if selection else None,
            ),
        )
        for result in state.step_results:
            step = state.plan.get_step(result.step_id)
            memory.record_step(
                result.action,
                step.parameters if step else {},
                "success" if result.success else "failure",
                error=result.error,
                duration=result.duration,
                output_summary=summarize_output(result.output),
            )
        episode = memory.end_episode()
        if episode is None:
            return []

        experiences = memory.extract_reusable_experience(episode)
        if experiences:
            self.events.emit("experience_saved", {
                "episode_id": episode.id,
                "experience_ids": [experience.id for experience in experiences],
            })
        return experiences

    def _fail(
        self,
        state: TaskRunState,
        error: str,
        status: RunStatus = "failed",
        recorded: bool = False,
    ) -> OrchestratorResult:
        if not recorded:
            state.record_error(error, recoverable=False)
        state.end_time = utc_now()
        state.final_response = failure_message(error)
        self._set_phase(state, "failed")
        self.events.emit("execution_failed", {"error": error})
        return OrchestratorResult(
            success=False,
            status=status,
            message=state.final_response,
            state=state,
            caveats=list(state.caveats),
        )

    def _crash_result(self, state: TaskRunState, exc: Exception) -> OrchestratorResult:
        message = str(exc) or type(exc).__name__
        if state.is_terminal:
            return OrchestratorResult(success=False, status="failed", message=failure_message(message), state=state)
        state.record_error(message, details={"exception": type(exc).__name__}, recoverable=False)
        return self._fail(state, message, recorded=True)

    def _finish(self, result: OrchestratorResult) -> None:
        if result.state.phase != "confirming":
            self._active = None
        trace = self.gateway.observability
        if trace is not None:
            trace.log_event("run_finished", {
                "status": result.status,
                "phase": result.state.phase,
                "iterations": result.state.iteration,
                "retries": result.state.retry_count,
                "errors": len(result.state.errors),
            })
        logger.info("Agent run finished: status=%s phase=%s", result.status, result.state.phase)


def _environment(context: ParseContext) -> tuple[Any, ...]:
    return (context.selection, context.active_sheet, context.workbook_summary)
