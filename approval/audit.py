"""
Audit log for the approval gate.

Contract: append-only `log(entry)` and `get_logs()`. Entries are never
mutated or deleted once written.
"""

from __future__ import annotations

import csv
import io
import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Iterable

from shared.models import AuditEntry, utc_now


class AuditLog(ABC):
    """Append-only audit trail."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or utc_now

    def log(self, entry: dict[str, Any]) -> AuditEntry:
        """Append an entry. `entry` must carry an `action`; id and timestamp are assigned here."""
        now = self._clock()
        fields = {key: value for key, value in entry.items() if key not in ("id", "timestamp")}
        return self._store(fields, now)

    @staticmethod
    def _build(fields: dict[str, Any], now: datetime, number: int) -> AuditEntry:
        return AuditEntry(id=f"LOG-{now.strftime('%Y%m%d%H%M%S')}-{number:04d}", timestamp=now, **fields)

    @abstractmethod
    def _store(self, fields: dict[str, Any], now: datetime) -> AuditEntry:
        """Number, build and persist one entry."""

    @abstractmethod
    def get_logs(self) -> list[AuditEntry]:
        """All retained entries in append order."""

    def query(
        self,
        action: str | Iterable[str] | None = None,
        approval_id: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        risk_level: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditEntry]:
        actions: set[str] | None = None
        if isinstance(action, str):
            actions = {action}
        elif action is not None:
            actions = set(action)

        results: list[AuditEntry] = []
        for entry in self.get_logs():
            if actions is not None and entry.action not in actions:
                continue
            if approval_id and entry.approval_id != approval_id:
                continue
            if user_id and entry.user_id != user_id:
                continue
            if session_id and entry.session_id != session_id:
                continue
            if risk_level and entry.risk_level != risk_level:
                continue
            if since and entry.timestamp < since:
                continue
            if until and entry.timestamp > until:
                continue
            results.append(entry)
        return results

    def get_approval_chain(self, approval_id: str) -> list[AuditEntry]:
        """Every entry for one approval, oldest first."""
        return sorted(self.query(approval_id=approval_id), key=lambda entry: entry.timestamp)

    def export_json(self) -> str:
        return json.dumps(
            [entry.model_dump(mode="json") for entry in self.get_logs()],
            ensure_ascii=False,
            indent=2,
        )

    def export_csv(self) -> str:
        entries = self.get_logs()
        if not entries:
            return ""
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow([
            "id",
            "timestamp",
            "action",
            "approval_id",
            "user_id",
            "session_id",
            "operation_name",
            "risk_level",
            "decided_by",
            "reason",
        ])
        for entry in entries:
            writer.writerow([
                entry.id,
                entry.timestamp.isoformat(),
                entry.action,
                entry.approval_id or "",
                entry.user_id or "",
                entry.session_id or "",
                entry.operation_name or "",
                entry.risk_level or "",
                entry.decided_by or "",
                entry.reason or "",
            ])
        return buffer.getvalue()


class InMemoryAuditLog(AuditLog):
    """Process-local audit log; the retained view is bounded by `max_entries`."""

    def __init__(self, max_entries: int = 1000, clock: Callable[[], datetime] | None = None):
        super().__init__(clock=clock)
        self.max_entries = max(1, max_entries)
        self._entries: list[AuditEntry] = []
        self._counter = 0

    def _store(self, fields: dict[str, Any], now: datetime) -> AuditEntry:
        self._counter += 1
        entry = self._build(fields, now, self._counter)
        self._entries.append(entry)
        if len(self._entries) > self.max_entries:
            self._entries = self._entries[-self.max_entries:]
        return entry

    def get_logs(self) -> list[AuditEntry]:
        return list(self._entries)


class SQLiteAuditLog(AuditLog):
    """SQLite-backed audit log. Rows are inserted, never updated or deleted."""

    def __init__(self, db_path: str = "audit.db", clock: Callable[[], datetime] | None = None):
        super().__init__(clock=clock)
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL,
                action TEXT NOT NULL,
                approval_id TEXT,
                entry_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_audit_entries_approval_id
            ON audit_entries(approval_id)
            """
        )
        self._conn.commit()

    def _store(self, fields: dict[str, Any], now: datetime) -> AuditEntry:
        # the id suffix is the row seq; BEGIN IMMEDIATE serializes writers sharing the file
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM audit_entries"
            ).fetchone()
            seq = int(row["next_seq"])
            entry = self._build(fields, now, seq)
            self._insert(entry, seq)
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()
        return entry

    def _insert(self, entry: AuditEntry, seq: int) -> None:
        payload = entry.model_dump(mode="json")
        self._conn.execute(
            """
            INSERT INTO audit_entries (seq, entry_id, action, approval_id, entry_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                seq,
                entry.id,
                entry.action,
                entry.approval_id,
                json.dumps(payload, ensure_ascii=False),
                entry.timestamp.isoformat(),
            ),
        )

    def get_logs(self) -> list[AuditEntry]:
        rows = self._conn.execute(
            "SELECT entry_json FROM audit_entries ORDER BY seq ASC"
        ).fetchall()
        return [AuditEntry(**json.loads(row["entry_json"])) for row in rows]

    def close(self) -> None:
        self._conn.close()
