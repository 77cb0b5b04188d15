from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from ..common.time_util import utc_now_iso
from .db import SqliteStore

NOTIFICATION_SCHEMA = """
CREATE TABLE IF NOT EXISTS notification_history (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  event_id TEXT NOT NULL UNIQUE,
  event_type TEXT NOT NULL,
  aggregate_id TEXT NOT NULL,
  routing_key TEXT,
  channel TEXT NOT NULL,
  recipient TEXT NOT NULL,
  subject TEXT,
  message TEXT NOT NULL DEFAULT '',
  sent_at_utc TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notification_history_aggregate_id
ON notification_history(aggregate_id, sent_at_utc DESC);

CREATE INDEX IF NOT EXISTS idx_notification_history_recipient
ON notification_history(recipient, sent_at_utc DESC);

CREATE INDEX IF NOT EXISTS idx_notification_history_event_type
ON notification_history(event_type);
"""


@dataclass(frozen=True)
class NotificationRecord:
    event_id: str
    aggregate_id: str
    event_type: str
    recipient: str
    sent_at: str
    channel: str = "EMAIL"
    subject: Optional[str] = None
    message: str = ""
    routing_key: Optional[str] = None


class NotificationLedger:
    """History of notifications actually sent, at most one per triggering event."""

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def _row_to_record(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            event_id=row["event_id"],
            aggregate_id=row["aggregate_id"],
            event_type=row["event_type"],
            recipient=row["recipient"],
            sent_at=row["sent_at_utc"],
            channel=row["channel"],
            subject=row["subject"],
            message=row["message"],
            routing_key=row["routing_key"],
        )

    def has_notified(self, event_id: str) -> bool:
        row = self.store.fetchone("SELECT 1 FROM notification_history WHERE event_id=?", (event_id,))
        return row is not None

    def record(
        self,
        event_id: str,
        aggregate_id: str,
        event_type: str,
        recipient: str,
        *,
        channel: str = "EMAIL",
        subject: Optional[str] = None,
        message: str = "",
        routing_key: Optional[str] = None,
        sent_at: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Idempotent insert keyed by event_id. Returns True if a row was written."""
        params = (
            event_id,
            getattr(event_type, "value", event_type),
            aggregate_id,
            routing_key,
            channel,
            recipient,
            subject,
            message,
            sent_at or utc_now_iso(),
        )
        sql = """
            INSERT INTO notification_history(event_id, event_type, aggregate_id, routing_key, channel,
                                             recipient, subject, message, sent_at_utc)
            VALUES (?,?,?,?,?,?,?,?,?)
            ON CONFLICT(event_id) DO NOTHING
        """
        if conn is None:
            with self.store.transaction() as tx:
                return tx.execute(sql, params).rowcount == 1
        return conn.execute(sql, params).rowcount == 1

    def lookup(self, event_id: str) -> Optional[NotificationRecord]:
        row = self.store.fetchone("SELECT * FROM notification_history WHERE event_id=?", (event_id,))
        return self._row_to_record(row) if row else None

    def history_for_aggregate(self, aggregate_id: str) -> list[NotificationRecord]:
        rows = self.store.fetchall(
            "SELECT * FROM notification_history WHERE aggregate_id=? ORDER BY sent_at_utc DESC, seq DESC",
            (aggregate_id,),
        )
        return [self._row_to_record(r) for r in rows]

    def history_for_recipient(self, recipient: str) -> list[NotificationRecord]:
        rows = self.store.fetchall(
            "SELECT * FROM notification_history WHERE recipient=? ORDER BY sent_at_utc DESC, seq DESC",
            (recipient,),
        )
        return [self._row_to_record(r) for r in rows]

    def count_by_type(self, event_type: str) -> int:
        row = self.store.fetchone(
            "SELECT COUNT(*) AS n FROM notification_history WHERE event_type=?",
            (getattr(event_type, "value", event_type),),
        )
        return int(row["n"]) if row else 0
