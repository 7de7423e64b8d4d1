from __future__ import annotations

import csv
import io
import json
import re
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from approval.audit import InMemoryAuditLog, SQLiteAuditLog
from approval.gate import ApprovalGate


class _Clock:
    def __init__(self):
        self.now = datetime(2025, 5, 4, 10, 30, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def test_log_assigns_id_and_timestamp():
    clock = _Clock()
    audit_log = InMemoryAuditLog(clock=clock)

    entry = audit_log.log({"action": "approval_requested", "approval_id": "APP-20250504-001", "id": "ignored"})

    assert re.fullmatch(r"LOG-\d{14}-\d{4}", entry.id)
    assert entry.id == "LOG-20250504103000-0001"
    assert entry.timestamp == clock.now
    assert audit_log.get_logs() == [entry]


def test_entries_are_frozen():
    entry = InMemoryAuditLog().log({"action": "approval_granted"})

    with pytest.raises(ValidationError):
        entry.action = "approval_rejected"


def test_query_filters_combine():
    clock = _Clock()
    audit_log = InMemoryAuditLog(clock=clock)
    audit_log.log({"action": "approval_requested", "approval_id": "A1", "user_id": "u1", "risk_level": "high"})
    clock.advance(10)
    audit_log.log({"action": "approval_granted", "approval_id": "A1", "user_id": "u1", "risk_level": "high"})
    clock.advance(10)
    audit_log.log({"action": "approval_requested", "approval_id": "A2", "user_id": "u2", "risk_level": "critical"})

    assert len(audit_log.query(action="approval_requested")) == 2
    assert len(audit_log.query(action=["approval_requested", "approval_granted"], user_id="u1")) == 2
    assert [entry.approval_id for entry in audit_log.query(risk_level="critical")] == ["A2"]
    since = datetime(2025, 5, 4, 10, 30, 5, tzinfo=timezone.utc)
    assert [entry.action for entry in audit_log.query(approval_id="A1", since=since)] == ["approval_granted"]
    until = datetime(2025, 5, 4, 10, 30, 15, tzinfo=timezone.utc)
    assert len(audit_log.query(until=until)) == 2


def test_in_memory_log_is_bounded():
    audit_log = InMemoryAuditLog(max_entries=2)
    for index in range(4):
        audit_log.log({"action": "user_input", "reason": str(index)})

    assert [entry.reason for entry in audit_log.get_logs()] == ["2", "3"]


def test_export_json_and_csv():
    audit_log = InMemoryAuditLog(clock=_Clock())
    assert audit_log.export_csv() == ""
    assert json.loads(audit_log.export_json()) == []

    audit_log.log({
        "action": "approval_rejected",
        "approval_id": "APP-20250504-001",
        "operation_name": "excel_delete_rows",
        "reason": 'said "no", twice',
    })

    exported = json.loads(audit_log.export_json())
    assert exported[0]["action"] == "approval_rejected"
    assert exported[0]["operation_name"] == "excel_delete_rows"

    rows = list(csv.reader(io.StringIO(audit_log.export_csv())))
    assert rows[0][:3] == ["id", "timestamp", "action"]
    assert rows[1][2] == "approval_rejected"
    assert rows[1][-1] == 'said "no", twice'


def test_gate_chain_lists_lifecycle_in_order():
    clock = _Clock()
    gate = ApprovalGate(clock=clock)
    assessment = gate.assess_risk("excel_clear_range", {"range": "A1:C9"})
    request = gate.create_approval_request("excel_clear_range", "write", {"range": "A1:C9"}, assessment)
    clock.advance(5)
    gate.handle_approval_decision(request.approval_id, True, decided_by="bob")

    chain = gate.audit_log.get_approval_chain(request.approval_id)

    assert [entry.action for entry in chain] == ["approval_requested", "approval_granted"]
    assert chain[1].decided_by == "bob"


def test_sqlite_audit_log_persists_across_instances(tmp_path):
    db_path = str(tmp_path / "audit.db")
    clock = _Clock()

    first = SQLiteAuditLog(db_path=db_path, clock=clock)
    first.log({"action": "approval_requested", "approval_id": "APP-1", "parameters": {"range": "A1:B2"}})
    first.log({"action": "approval_granted", "approval_id": "APP-1"})
    first.close()

    second = SQLiteAuditLog(db_path=db_path, clock=clock)
    try:
        entries = second.get_logs()
        assert [entry.action for entry in entries] == ["approval_requested", "approval_granted"]
        assert entries[0].parameters == {"range": "A1:B2"}
        assert entries[0].timestamp == clock.now

        third = second.log({"action": "approval_expired", "approval_id": "APP-2"})
        assert third.id.endswith("-0003")
        assert [entry.action for entry in second.get_approval_chain("APP-1")] == [
            "approval_requested",
            "approval_granted",
        ]
    finally:
        second.close()


def test_sqlite_logs_sharing_a_file_never_reuse_ids(tmp_path):
    db_path = str(tmp_path / "audit.db")
    clock = _Clock()
    first = SQLiteAuditLog(db_path=db_path, clock=clock)
    second = SQLiteAuditLog(db_path=db_path, clock=clock)
    try:
        ids = [
            first.log({"action": "approval_requested", "approval_id": "APP-1"}).id,
            second.log({"action": "approval_requested", "approval_id": "APP-2"}).id,
            first.log({"action": "approval_granted", "approval_id": "APP-1"}).id,
            second.log({"action": "approval_rejected", "approval_id": "APP-2"}).id,
        ]

        assert [entry_id[-4:] for entry_id in ids] == ["0001", "0002", "0003", "0004"]
        assert [entry.id for entry in first.get_logs()] == ids
    finally:
        first.close()
        second.close()
