from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from .db import SqliteStore

AUDIT_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_log (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  event_id TEXT NOT NULL,
  event_type TEXT NOT NULL,
  aggregate_id TEXT NOT NULL,
  aggregate_type TEXT NOT NULL DEFAULT 'Document',
  routing_key TEXT,
  timestamp_utc TEXT NOT NULL,
  received_at_utc TEXT NOT NULL,
  message_id TEXT,
  correlation_id TEXT,
  payload_json TEXT NOT NULL DEFAULT '{}',
  CONSTRAINT unique_event_id UNIQUE (event_id)
);

CREATE INDEX IF NOT EXISTS idx_audit_log_aggregate_id
ON audit_log(aggregate_id, received_at_utc, timestamp_utc, seq);

CREATE INDEX IF NOT EXISTS idx_audit_log_event_type
ON audit_log(event_type, received_at_utc);
"""


@dataclass(frozen=True)
class AuditRecord:
    event_id: str
    event_type: str
    aggregate_id: str
    timestamp: str
    received_at: str
    payload: dict[str, Any] = field(default_factory=dict)
    aggregate_type: str = "Document"
    routing_key: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None


def describe(record: AuditRecord) -> str:
    """Human-readable one-liner for a timeline entry."""
    p = record.payload
    detail = ""
    if record.event_type == "DocumentUploaded" and p.get("documentName"):
        detail = f"documentName={p['documentName']}"
    elif record.event_type == "DocumentValidated" and p.get("validatedBy"):
        detail = f"validatedBy={p['validatedBy']}"
    elif record.event_type == "DocumentRejected":
        reason = p.get("rejectionReason") or p.get("reason")
        if reason:
            detail = f"reason={reason}"
    elif record.event_type == "DocumentEnriched" and p.get("classification"):
        detail = f"classification={p['classification']}"
    if detail:
        return f"{record.event_type} ({detail})"
    return record.event_type


class AuditTrailStore:
    """Append-only audit log of every envelope the audit consumer received."""

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        try:
            payload = json.loads(row["payload_json"] or "{}")
            if not isinstance(payload, dict):
                payload = {}
        except ValueError:
            payload = {}
        return AuditRecord(
            event_id=row["event_id"],
            event_type=row["event_type"],
            aggregate_id=row["aggregate_id"],
            aggregate_type=row["aggregate_type"],
            routing_key=row["routing_key"],
            timestamp=row["timestamp_utc"],
            received_at=row["received_at_utc"],
            message_id=row["message_id"],
            correlation_id=row["correlation_id"],
            payload=payload,
        )

    def append(self, record: AuditRecord, *, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Insert the record; a second append of the same event_id is a no-op.

        Returns True if a row was written.
        """
        if conn is None:
            with self.store.transaction() as tx:
                return self._insert(tx, record)
        return self._insert(conn, record)

    def _insert(self, conn: sqlite3.Connection, record: AuditRecord) -> bool:
        cur = conn.execute(
            """
            INSERT INTO audit_log(event_id, event_type, aggregate_id, aggregate_type, routing_key,
                                  timestamp_utc, received_at_utc, message_id, correlation_id, payload_json)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(event_id) DO NOTHING
            """,
            (
                record.event_id,
                record.event_type,
                record.aggregate_id,
                record.aggregate_type,
                record.routing_key,
                record.timestamp,
                record.received_at,
                record.message_id,
                record.correlation_id,
                json.dumps(record.payload, ensure_ascii=False, sort_keys=True),
            ),
        )
        return cur.rowcount == 1

    def lookup(self, event_id: str) -> Optional[AuditRecord]:
        row = self.store.fetchone("SELECT * FROM audit_log WHERE event_id=?", (event_id,))
        if not row:
            return None
        return self._row_to_record(row)

    def records_for(self, aggregate_id: str) -> list[AuditRecord]:
        """All records of one document in receipt order (oldest first)."""
        rows = self.store.fetchall(
            """
            SELECT * FROM audit_log WHERE aggregate_id=?
            ORDER BY received_at_utc ASC, timestamp_utc ASC, seq ASC
            """,
            (aggregate_id,),
        )
        return [self._row_to_record(r) for r in rows]

    def timeline_for(self, aggregate_id: str) -> list[str]:
        return [describe(r) for r in self.records_for(aggregate_id)]

    def count_for(self, aggregate_id: str) -> int:
        row = self.store.fetchone("SELECT COUNT(*) AS n FROM audit_log WHERE aggregate_id=?", (aggregate_id,))
        return int(row["n"]) if row else 0

    def count_by_type(self, event_type: str) -> int:
        row = self.store.fetchone("SELECT COUNT(*) AS n FROM audit_log WHERE event_type=?", (event_type,))
        return int(row["n"]) if row else 0

    def list_by_type(self, event_type: str, *, limit: Optional[int] = None) -> list[AuditRecord]:
        """Records of one event type, newest first."""
        sql = "SELECT * FROM audit_log WHERE event_type=? ORDER BY received_at_utc DESC, seq DESC"
        params: list[Any] = [event_type]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_record(r) for r in self.store.fetchall(sql, params)]

    def stats(self) -> dict[str, Any]:
        rows = self.store.fetchall("SELECT event_type, COUNT(*) AS n FROM audit_log GROUP BY event_type")
        by_type = {r["event_type"]: int(r["n"]) for r in rows}
        return {"total_events": sum(by_type.values()), "by_event_type": by_type}
