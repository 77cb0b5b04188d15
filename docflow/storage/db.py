from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence


PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA busy_timeout=30000;
"""

# Every consumer database carries the idempotency ledger.
LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_events (
  event_id TEXT PRIMARY KEY,
  event_type TEXT NOT NULL,
  aggregate_id TEXT NOT NULL,
  processed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_processed_events_aggregate_id
ON processed_events(aggregate_id);

CREATE INDEX IF NOT EXISTS idx_processed_events_processed_at
ON processed_events(processed_at);
"""


class SqliteStore:
    """One consumer's database: ledger + that consumer's derived store.

    Why:
    - a single connection per store guarded by a lock (workers run in threads)
    - autocommit mode; writes go through transaction() which takes the write
      lock up front (BEGIN IMMEDIATE), so concurrent writers from other
      connections or processes queue on SQLite instead of failing mid-way
    - uniqueness of event_id is enforced by the schema, not by this lock
    """

    def __init__(self, db_path: str, *, schema: str = "") -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(PRAGMAS + LEDGER_SCHEMA + schema)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a unit of work atomically; rolled back if the block raises."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                if self._conn.in_transaction:
                    self._conn.execute("COMMIT")

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()


def is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    msg = str(exc)
    return "UNIQUE constraint failed" in msg or "PRIMARY KEY" in msg
