from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..common.time_util import utc_now_iso
from .db import SqliteStore, is_unique_violation


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


@dataclass(frozen=True)
class LedgerEntry:
    event_id: str
    event_type: str
    aggregate_id: str
    processed_at: str


class IdempotencyLedger:
    """Per-consumer record of fully processed event ids.

    This is a write-ahead correctness record, not a cache: an entry exists iff
    the consumer committed the event's effect. claim() is the only writer.
    """

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def has_processed(self, event_id: str) -> bool:
        row = self.store.fetchone("SELECT 1 FROM processed_events WHERE event_id=?", (event_id,))
        return row is not None

    def get(self, event_id: str) -> Optional[LedgerEntry]:
        row = self.store.fetchone("SELECT * FROM processed_events WHERE event_id=?", (event_id,))
        if not row:
            return None
        return LedgerEntry(
            event_id=row["event_id"],
            event_type=row["event_type"],
            aggregate_id=row["aggregate_id"],
            processed_at=row["processed_at"],
        )

    def claim(
        self,
        event_id: str,
        event_type: str,
        aggregate_id: str,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ClaimOutcome:
        """Insert the ledger entry if absent.

        Pass `conn` to claim inside the caller's transaction (joint commit with
        the effect); otherwise the claim commits on its own.

        Duplicates are a normal outcome: exactly one concurrent caller gets
        CLAIMED, the rest ALREADY_CLAIMED. Only genuine storage errors raise.
        """
        if conn is not None:
            return self._insert(conn, event_id, event_type, aggregate_id)
        with self.store.transaction() as tx:
            return self._insert(tx, event_id, event_type, aggregate_id)

    def _insert(self, conn: sqlite3.Connection, event_id: str, event_type: str, aggregate_id: str) -> ClaimOutcome:
        try:
            conn.execute(
                """
                INSERT INTO processed_events(event_id, event_type, aggregate_id, processed_at)
                VALUES (?,?,?,?)
                """,
                (event_id, getattr(event_type, "value", event_type), aggregate_id, utc_now_iso()),
            )
        except sqlite3.IntegrityError as e:
            if is_unique_violation(e):
                return ClaimOutcome.ALREADY_CLAIMED
            raise
        return ClaimOutcome.CLAIMED

    def count(self) -> int:
        row = self.store.fetchone("SELECT COUNT(*) AS n FROM processed_events")
        return int(row["n"]) if row else 0

    def purge_before(self, cutoff_utc: str) -> int:
        """Retention cleanup: drop entries processed before `cutoff_utc`.

        Out-of-band only; a purged id is processable again if redelivered.
        """
        with self.store.transaction() as tx:
            cur = tx.execute("DELETE FROM processed_events WHERE processed_at < ?", (cutoff_utc,))
            return cur.rowcount
