"""QueryHistory: DuckDB-backed log of executed queries."""

import os
import threading
from dataclasses import dataclass
from datetime import datetime

import duckdb

from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"
OUTCOME_ABORTED = "aborted"

_SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS query_history (
        seq         BIGINT NOT NULL,
        ts          TIMESTAMP NOT NULL,
        label       VARCHAR NOT NULL,
        query       VARCHAR NOT NULL,
        outcome     VARCHAR NOT NULL,
        error       VARCHAR,
        elapsed     DOUBLE
    )
    """,
]

_INDEX_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_history_label ON query_history (label, ts)",
]

_COLUMNS = "seq, ts, label, query, outcome, error, elapsed"


@dataclass(frozen=True)
class HistoryRecord:
    seq: int
    timestamp: datetime
    label: str
    query: str
    outcome: str = OUTCOME_OK
    error: str | None = None
    elapsed: float | None = None

    @property
    def failed(self) -> bool:
        return self.outcome != OUTCOME_OK


class QueryHistory:
    """Append-only, insertion-ordered query log.

    max_entries=None (or 0) keeps everything; otherwise the oldest records
    are evicted once the log grows past max_entries.
    """

    def __init__(self, db_path: str = ":memory:", max_entries: int | None = None):
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._lock = threading.Lock()
        self._conn = duckdb.connect(db_path)
        self._max_entries = max_entries or None
        self._init_schema()
        row = self._conn.execute("SELECT coalesce(max(seq), 0) FROM query_history").fetchone()
        self._last_seq = row[0]
        logger.info("QueryHistory opened: %s (max_entries=%s)", db_path, self._max_entries)

    def _init_schema(self):
        with self._lock:
            for sql in _SCHEMA_SQL:
                self._conn.execute(sql)
            for sql in _INDEX_SQL:
                self._conn.execute(sql)

    @property
    def max_entries(self) -> int | None:
        return self._max_entries

    def close(self):
        with self._lock:
            self._conn.close()
        logger.info("QueryHistory closed")

    def append(self, label: str, query: str, outcome: str = OUTCOME_OK,
               error: str | None = None, elapsed: float | None = None) -> HistoryRecord | None:
        """Record one executed query. Storage failures are logged, never raised."""
        try:
            with self._lock:
                seq = self._last_seq + 1
                ts = datetime.now()
                self._conn.execute(
                    f"INSERT INTO query_history ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [seq, ts, label, query, outcome, error, elapsed],
                )
                self._last_seq = seq
                if self._max_entries:
                    self._conn.execute(
                        "DELETE FROM query_history WHERE seq <= ?",
                        [seq - self._max_entries],
                    )
        except Exception as e:
            logger.error("Failed to record history for %s: %s", label, e)
            return None
        return HistoryRecord(seq, ts, label, query, outcome, error, elapsed)

    def records(self, label: str | None = None) -> list[HistoryRecord]:
        """Records in insertion order, optionally only those for one label."""
        with self._lock:
            if label is None:
                rows = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM query_history ORDER BY seq"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM query_history WHERE label = ? ORDER BY seq",
                    [label],
                ).fetchall()
        return [HistoryRecord(*r) for r in rows]

    def get(self, index: int) -> HistoryRecord:
        """Record at position index (insertion order, negative counts from the end)."""
        size = len(self)
        if index < 0:
            index += size
        if not 0 <= index < size:
            raise IndexError(f"history index out of range: {index}")
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM query_history ORDER BY seq LIMIT 1 OFFSET {int(index)}"
            ).fetchone()
        return HistoryRecord(*row)

    def __len__(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT count(*) FROM query_history").fetchone()[0]

    def clear(self):
        with self._lock:
            self._conn.execute("DELETE FROM query_history")
        logger.info("History cleared")
