"""
Shared Pydantic models for all layers.

Value objects are immutable (frozen) after creation. The run state, plan step
status, approval request status and experience usage statistics have a
defined lifecycle and are mutated only by the component that owns them.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Run State Machine ─────────────────────────────────────────

AgentPhase = Literal[
    "idle",
    "sensing",
    "parsing",
    "compiling",
    "confirming",
    "executing",
    "verifying",
    "fixing",
    "completed",
    "failed",
]

TERMINAL_PHASES: frozenset[str] = frozenset({"completed", "failed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"sensing", "failed"}),
    "sensing": frozenset({"parsing", "failed"}),
    "parsing": frozenset({"compiling", "completed", "failed"}),
    "compiling": frozenset({"confirming", "executing", "failed"}),
    "confirming": frozenset({"executing", "failed"}),
    "executing": frozenset({"verifying", "fixing", "failed"}),
    "verifying": frozenset({"completed", "fixing", "failed"}),
    "fixing": frozenset({"executing", "completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class InvalidPhaseTransition(RuntimeError):
    """Raised on a state-machine move outside the phase graph or after a terminal phase."""


# ─── Sensing / Intent Layer ───────────────────────────────────

class ConversationTurn(BaseModel):
    model_config = {"frozen": True}

    role: Literal["user", "assistant"]
    content: str


class SelectionInfo(BaseModel):
    """Current selection of the target workbook."""
    model_config = {"frozen": True}

    address: str = ""
    values: list[list[Any]] | None = None
    row_count: int | None = None
    column_count: int | None = None


class WorkbookSummary(BaseModel):
    model_config = {"frozen": True}

    sheet_names: list[str] = Field(default_factory=list)
    table_names: list[str] = Field(default_factory=list)


class ParseContext(BaseModel):
    """Input handed to the Intent Parser. Sensing produces enriched copies."""
    model_config = {"frozen": True}

    user_message: str
    selection: SelectionInfo | None = None
    active_sheet: str | None = None
    workbook_summary: WorkbookSummary | None = None
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    session_id: str | None = None
    user_id: str | None = None


class IntentSpec(BaseModel):
    """Structured intent returned by the Intent Parser."""
    model_config = {"frozen": True}

    intent: str = Field(..., description="Intent type, e.g. 'query', 'format', 'clarify'")
    confidence: float = Field(default=1.0, description="Extraction confidence 0.0-1.0")
    needs_clarification: bool = False
    clarification_question: str | None = None
    clarification_options: list[str] = Field(default_factory=list)
    spec: dict[str, Any] = Field(default_factory=dict, description="Intent-specific business spec")
    reasoning: str | None = None


# ─── Plan Layer ───────────────────────────────────────────────

SuccessConditionType = Literal["tool_success", "range_exists", "sheet_exists"]
StepStatus = Literal["pending", "skipped", "done"]


class SuccessCondition(BaseModel):
    """Declarative per-step check evaluated during verification."""
    model_config = {"frozen": True}

    type: SuccessConditionType = "tool_success"
    target_range: str | None = None
    target_sheet: str | None = None


class PlanStep(BaseModel):
    """Atomic step of an execution plan. After compilation only `status` changes, and `action` when recovery swaps a tool."""

    id: str
    order: int
    action: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    success_condition: SuccessCondition = Field(default_factory=SuccessCondition)
    is_write: bool = False
    critical: bool = Field(default=False, description="Critical steps are never skipped by recovery")
    status: StepStatus = "pending"


class ExecutionPlan(BaseModel):
    """Ordered plan produced once per run by the Spec Compiler."""

    id: str = ""
    task_description: str = ""
    steps: list[PlanStep]

    def ordered_steps(self) -> list[PlanStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def get_step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def write_steps(self) -> list[PlanStep]:
        return [step for step in self.ordered_steps() if step.is_write]


class CompileContext(BaseModel):
    model_config = {"frozen": True}

    current_selection: str | None = None
    active_sheet: str | None = None


class CompileResult(BaseModel):
    model_config = {"frozen": True}

    success: bool
    plan: ExecutionPlan | None = None
    error: str | None = None


# ─── Tool Layer ───────────────────────────────────────────────

class ToolResult(BaseModel):
    """Normalized outcome of a single tool call."""
    model_config = {"frozen": True}

    success: bool
    output: str | None = None
    error: str | None = None

    def structured(self) -> Any | None:
        """Best-effort parse of the output payload; None when it is not JSON."""
        if not self.output:
            return None
        try:
            return json.loads(self.output)
        except (TypeError, ValueError):
            return None


# ─── Execution Records ────────────────────────────────────────

class StepResult(BaseModel):
    """Outcome of one step within the run, with its verification verdict."""

    step_id: str
    action: str
    success: bool
    output: str | None = None
    error: str | None = None
    duration: float = Field(default=0.0, description="Seconds")
    verified: bool | None = None
    verification_error: str | None = None


class AgentError(BaseModel):
    model_config = {"frozen": True}

    phase: AgentPhase
    message: str
    details: Any = None
    timestamp: datetime = Field(default_factory=utc_now)
    recoverable: bool = True


class TaskRunState(BaseModel):
    """Run state owned exclusively by the orchestrator for one invocation."""

    phase: AgentPhase = "idle"
    iteration: int = 0
    retry_count: int = 0
    intent_spec: IntentSpec | None = None
    plan: ExecutionPlan | None = None
    step_results: list[StepResult] = Field(default_factory=list)
    errors: list[AgentError] = Field(default_factory=list)
    final_response: str | None = None
    pending_approvals: list[str] = Field(default_factory=list)
    caveats: list[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def transition(self, phase: AgentPhase) -> None:
        if phase not in ALLOWED_TRANSITIONS.get(self.phase, frozenset()):
            raise InvalidPhaseTransition(f"Illegal phase transition: {self.phase} -> {phase}")
        self.phase = phase

    def ensure_active(self) -> None:
        if self.is_terminal:
            raise InvalidPhaseTransition(f"Run state is terminal ({self.phase}) and cannot be mutated")

    def record_error(self, message: str, details: Any = None, recoverable: bool = True) -> AgentError:
        self.ensure_active()
        error = AgentError(phase=self.phase, message=message, details=details, recoverable=recoverable)
        self.errors.append(error)
        return error

    def add_step_result(self, result: StepResult) -> None:
        self.ensure_active()
        self.step_results.append(result)

    def elapsed_seconds(self) -> float:
        end = self.end_time or utc_now()
        return max(0.0, (end - self.start_time).total_seconds())


# ─── Risk & Approval ──────────────────────────────────────────

class RiskLevel(str, Enum):
    """Ordered risk classification: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self, steps: int = 1) -> RiskLevel:
        return _RISK_ORDER[min(len(_RISK_ORDER) - 1, self.rank + steps)]

    def at_least(self, other: RiskLevel) -> RiskLevel:
        return self if self.rank >= other.rank else other


_RISK_ORDER: list[RiskLevel] = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class EstimatedImpact(BaseModel):
    model_config = {"frozen": True}

    cell_count: int | None = None
    row_count: int | None = None
    column_count: int | None = None
    sheet_count: int | None = None


class RiskAssessment(BaseModel):
    model_config = {"frozen": True}

    risk_level: RiskLevel
    needs_approval: bool
    reason: str
    impact_description: str
    reversible: bool = True
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)


ApprovalStatus = Literal["pending", "approved", "rejected", "expired"]


class ApprovalRequest(BaseModel):
    """Pending approval; `status` leaves 'pending' exactly once."""

    approval_id: str
    operation_name: str
    operation_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    risk_assessment: RiskAssessment
    request_time: datetime
    expires_at: datetime
    status: ApprovalStatus = "pending"
    user_id: str | None = None
    session_id: str | None = None
    step_id: str | None = None


class ApprovalDecision(BaseModel):
    model_config = {"frozen": True}

    approval_id: str
    approved: bool
    decided_at: datetime = Field(default_factory=utc_now)
    decided_by: str | None = None
    reason: str | None = None


class ApprovalOutcome(BaseModel):
    model_config = {"frozen": True}

    success: bool
    request: ApprovalRequest | None = None
    error: str | None = None


AuditAction = Literal[
    "approval_requested",
    "approval_granted",
    "approval_rejected",
    "approval_expired",
    "operation_started",
    "operation_completed",
    "operation_failed",
    "verify_completed",
    "user_input",
    "agent_response",
]


class AuditEntry(BaseModel):
    """Append-only audit record. Never mutated after logging."""
    model_config = {"frozen": True}

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    action: AuditAction
    approval_id: str | None = None
    request_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    operation_name: str | None = None
    operation_type: str | None = None
    parameters: dict[str, Any] | None = None
    risk_level: str | None = None
    user_intent: str | None = None
    approved_text: str | None = None
    decided_by: str | None = None
    reason: str | None = None
    result: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ─── Episodic Memory ──────────────────────────────────────────

EpisodeOutcome = Literal["success", "partial", "failure"]
StepOutcome = Literal["success", "failure", "skipped"]


class EpisodeStep(BaseModel):
    model_config = {"frozen": True}

    step_number: int
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: StepOutcome
    error: str | None = None
    duration: float = 0.0
    output_summary: str | None = None


class EpisodeContext(BaseModel):
    model_config = {"frozen": True}

    sheet_name: str | None = None
    range: str | None = None
    data_size: int | None = None


class Episode(BaseModel):
    """Recorded trace of one task attempt. Immutable once closed."""
    model_config = {"frozen": True}

    id: str
    user_request: str
    tags: list[str] = Field(default_factory=list)
    steps: list[EpisodeStep] = Field(default_factory=list)
    outcome: EpisodeOutcome
    start_time: datetime
    end_time: datetime
    total_duration: float = 0.0
    success_rate: float = 0.0
    failure_reason: str | None = None
    learnings: list[str] = Field(default_factory=list)
    context: EpisodeContext | None = None


ExperienceType = Literal["user_preference", "failure_reason", "valid_parameters", "task_pattern"]


class UserPreference(BaseModel):
    kind: Literal["user_preference"] = "user_preference"
    preference_type: str
    value: Any = None
    source_request: str = ""
    confidence: float = 1.0


class FailureReason(BaseModel):
    kind: Literal["failure_reason"] = "failure_reason"
    tool_name: str
    error_type: str
    error_message: str
    trigger_condition: str = ""
    solution: str | None = None
    occurrence_count: int = 1


class ValidParameters(BaseModel):
    kind: Literal["valid_parameters"] = "valid_parameters"
    tool_name: str
    task_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    success_rate: float = 1.0
    usage_count: int = 1


class PatternStep(BaseModel):
    tool_name: str
    parameter_hints: dict[str, str] = Field(default_factory=dict)


class TaskPattern(BaseModel):
    kind: Literal["task_pattern"] = "task_pattern"
    task_type: str
    keywords: list[str] = Field(default_factory=list)
    steps: list[PatternStep] = Field(default_factory=list)
    success_rate: float = 1.0
    average_duration: float = 0.0
    usage_count: int = 1


ExperienceContent = Annotated[
    Union[UserPreference, FailureReason, ValidParameters, TaskPattern],
    Field(discriminator="kind"),
]


class ReusableExperience(BaseModel):
    """Distilled knowledge mined from closed episodes. Usage stats are updated on merge."""

    id: str
    type: ExperienceType
    created_at: datetime
    last_used_at: datetime
    usage_count: int = 1
    content: ExperienceContent


# ─── Orchestrator Output ──────────────────────────────────────

RunStatus = Literal[
    "completed",
    "completed_with_caveats",
    "failed",
    "needs_clarification",
    "needs_confirmation",
    "needs_approval",
    "cancelled",
]


class OrchestratorResult(BaseModel):
    """Structured outcome of a run. Failures are reported here, never raised."""

    success: bool
    status: RunStatus
    message: str
    state: TaskRunState
    needs_confirmation: bool = False
    confirmation_question: str | None = None
    needs_clarification: bool = False
    clarification_question: str | None = None
    approval_requests: list[ApprovalRequest] = Field(default_factory=list)
    experiences: list[ReusableExperience] = Field(default_factory=list)
    caveats: list[str] = Field(default_factory=list)


EventType = Literal[
    "phase_changed",
    "memory_hint",
    "intent_parsed",
    "plan_compiled",
    "approval_requested",
    "step_started",
    "step_completed",
    "step_failed",
    "verification_started",
    "verification_passed",
    "verification_failed",
    "retry_started",
    "fix_applied",
    "execution_completed",
    "execution_failed",
    "experience_saved",
]


class OrchestratorEvent(BaseModel):
    """Domain event emitted by the state machine, ordered by `sequence`."""
    model_config = {"frozen": True}

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    sequence: int
    timestamp: datetime = Field(default_factory=utc_now)
