"""
Approval Gate — decides when execution must pause for the user.

Responsibility:
- Score operation risk (delegates to approval.risk)
- Create, decide, expire and sweep approval requests
- Emit an audit record for every lifecycle change

Pending requests are held in memory and are safe for sequential access only.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable

from approval.audit import AuditLog, InMemoryAuditLog
from approval.risk import assess_risk, operation_display_name
from shared.config import ApprovalConfig
from shared.models import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRequest,
    AuditEntry,
    RiskAssessment,
    RiskLevel,
    utc_now,
)

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Risk-scored approval gate for destructive workbook operations."""

    def __init__(
        self,
        config: ApprovalConfig | None = None,
        audit_log: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or ApprovalConfig()
        self._clock = clock or utc_now
        self.audit_log = audit_log if audit_log is not None else InMemoryAuditLog(clock=self._clock)
        self._pending: dict[str, ApprovalRequest] = {}
        self._history: list[ApprovalDecision] = []
        self._sequence_day: date | None = None
        self._sequence = 0

    # ─── Risk ────────────────────────────────────────────────

    def assess_risk(
        self,
        operation_name: str,
        parameters: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> RiskAssessment:
        return assess_risk(operation_name, parameters, context, config=self.config)

    # ─── Lifecycle ───────────────────────────────────────────

    def generate_approval_id(self) -> str:
        """`APP-YYYYMMDD-NNN`; the sequence restarts every calendar day."""
        today = self._clock().date()
        if self._sequence_day != today:
            self._sequence_day = today
            self._sequence = 0
        self._sequence += 1
        return f"APP-{today.strftime('%Y%m%d')}-{self._sequence:03d}"

    def create_approval_request(
        self,
        operation_name: str,
        operation_type: str,
        parameters: dict[str, Any],
        risk_assessment: RiskAssessment,
        user_id: str | None = None,
        session_id: str | None = None,
        step_id: str | None = None,
    ) -> ApprovalRequest:
        now = self._clock()
        request = ApprovalRequest(
            approval_id=self.generate_approval_id(),
            operation_name=operation_name,
            operation_type=operation_type,
            parameters=dict(parameters),
            risk_assessment=risk_assessment,
            request_time=now,
            expires_at=now + timedelta(seconds=self.config.approval_timeout),
            status="pending",
            user_id=user_id,
            session_id=session_id,
            step_id=step_id,
        )
        self._pending[request.approval_id] = request
        logger.info(
            "Approval requested: %s op=%s risk=%s",
            request.approval_id,
            operation_name,
            risk_assessment.risk_level.value,
        )
        self._audit({
            "action": "approval_requested",
            "approval_id": request.approval_id,
            "operation_name": operation_name,
            "operation_type": operation_type,
            "parameters": request.parameters,
            "risk_level": risk_assessment.risk_level.value,
            "user_id": user_id,
            "session_id": session_id,
        })
        return request

    def handle_approval_decision(
        self,
        approval_id: str,
        approved: bool,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> ApprovalOutcome:
        request = self._pending.get(approval_id)
        if request is None:
            return ApprovalOutcome(success=False, error=f"Approval request not found: {approval_id}")

        now = self._clock()
        if now > request.expires_at:
            self._expire(request)
            return ApprovalOutcome(success=False, request=request, error=f"Approval request expired: {approval_id}")

        request.status = "approved" if approved else "rejected"
        del self._pending[approval_id]
        self._history.append(
            ApprovalDecision(
                approval_id=approval_id,
                approved=approved,
                decided_at=now,
                decided_by=decided_by,
                reason=reason,
            )
        )
        logger.info("Approval %s %s by %s", approval_id, request.status, decided_by or "unknown")
        self._audit({
            "action": "approval_granted" if approved else "approval_rejected",
            "approval_id": approval_id,
            "operation_name": request.operation_name,
            "operation_type": request.operation_type,
            "parameters": request.parameters,
            "risk_level": request.risk_assessment.risk_level.value,
            "decided_by": decided_by,
            "reason": reason,
            "user_id": request.user_id,
            "session_id": request.session_id,
        })
        return ApprovalOutcome(success=True, request=request)

    def validate_confirmation_text(self, text: str, approval_id: str) -> bool:
        """The user must echo back `<prefix> <approval_id>` exactly."""
        expected = f"{self.config.confirmation_prefix} {approval_id}"
        return (text or "").strip() == expected

    def expected_confirmation_text(self, approval_id: str) -> str:
        return f"{self.config.confirmation_prefix} {approval_id}"

    def expire_if_due(self, approval_id: str) -> bool:
        """Expire one pending request if its deadline has passed. Returns True if it was expired."""
        request = self._pending.get(approval_id)
        if request is None or self._clock() <= request.expires_at:
            return False
        self._expire(request)
        return True

    def cleanup_expired_approvals(self) -> int:
        now = self._clock()
        expired = [request for request in self._pending.values() if now > request.expires_at]
        for request in expired:
            self._expire(request)
        return len(expired)

    def _expire(self, request: ApprovalRequest) -> None:
        request.status = "expired"
        self._pending.pop(request.approval_id, None)
        logger.info("Approval expired: %s", request.approval_id)
        self._audit({
            "action": "approval_expired",
            "approval_id": request.approval_id,
            "operation_name": request.operation_name,
            "operation_type": request.operation_type,
            "user_id": request.user_id,
            "session_id": request.session_id,
        })

    # ─── Queries ─────────────────────────────────────────────

    def get_pending_approval(self, approval_id: str) -> ApprovalRequest | None:
        return self._pending.get(approval_id)

    def get_all_pending_approvals(self) -> list[ApprovalRequest]:
        return list(self._pending.values())

    @property
    def decision_history(self) -> list[ApprovalDecision]:
        return list(self._history)

    def get_audit_logs(self) -> list[AuditEntry]:
        return self.audit_log.get_logs()

    def generate_confirmation_message(self, request: ApprovalRequest) -> str:
        assessment = request.risk_assessment
        severity = "Critical" if assessment.risk_level == RiskLevel.CRITICAL else "High"
        if assessment.risk_level in (RiskLevel.LOW, RiskLevel.MEDIUM):
            severity = assessment.risk_level.value.capitalize()
        target = request.parameters.get("range") or request.parameters.get("address") or "current selection"

        lines = [
            f"[{severity} risk operation pending confirmation | {request.approval_id}]",
            "",
            f"Operation: {operation_display_name(request.operation_name)}",
            f"Target: {target}",
        ]
        if assessment.estimated_impact.row_count:
            lines.append(f"Affected rows: about {assessment.estimated_impact.row_count}")
        lines.append(f"Risk: {assessment.impact_description}")
        lines.append(f"Reversible: {'yes' if assessment.reversible else 'no'}")
        lines.append("")
        lines.append(f'Reply "{self.expected_confirmation_text(request.approval_id)}" to continue, or cancel.')
        return "\n".join(lines)

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)

    def _audit(self, entry: dict[str, Any]) -> None:
        if not self.config.enable_audit:
            return
        self.audit_log.log(entry)
