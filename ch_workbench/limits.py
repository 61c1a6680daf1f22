"""Client-side result caps applied when "limit query" is switched on.

The server always sends the full response; a policy only trims what is
handed back for display.
"""

import json

from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ROWS = 1000
DEFAULT_MAX_BYTES = 1024 * 1024


class LimitPolicy:
    name = "none"

    def apply(self, rows: list[dict]) -> tuple[list[dict], bool]:
        """Return (kept rows, truncated flag)."""
        return rows, False

    def describe(self) -> str:
        return "no limit"


class RowLimit(LimitPolicy):
    name = "rows"

    def __init__(self, max_rows: int):
        if max_rows <= 0:
            raise ValueError("max_rows must be positive")
        self.max_rows = max_rows

    def apply(self, rows):
        if len(rows) <= self.max_rows:
            return rows, False
        logger.warning("Result truncated: %d rows -> %d (row limit)", len(rows), self.max_rows)
        return rows[:self.max_rows], True

    def describe(self):
        return f"{self.max_rows} rows"


def _row_size(row: dict) -> int:
    return len(json.dumps(row, default=str).encode("utf-8"))


class ByteLimit(LimitPolicy):
    """Keep whole rows while their JSON-encoded size stays within max_bytes."""

    name = "bytes"

    def __init__(self, max_bytes: int):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes

    def apply(self, rows):
        total = 0
        for i, row in enumerate(rows):
            total += _row_size(row)
            if total > self.max_bytes:
                logger.warning("Result truncated: %d rows -> %d (byte limit %d)",
                               len(rows), i, self.max_bytes)
                return rows[:i], True
        return rows, False

    def describe(self):
        return f"{self.max_bytes} bytes"


def make_limit_policy(settings) -> LimitPolicy:
    kind = settings.get("LIMIT_QUERY_KIND").strip().lower()
    if kind == "bytes":
        max_bytes = settings.get_int("LIMIT_QUERY_BYTES", DEFAULT_MAX_BYTES)
        return ByteLimit(max_bytes if max_bytes > 0 else DEFAULT_MAX_BYTES)
    if kind != "rows":
        logger.warning("Unknown LIMIT_QUERY_KIND %r, falling back to rows", kind)
    max_rows = settings.get_int("LIMIT_QUERY_ROWS", DEFAULT_MAX_ROWS)
    return RowLimit(max_rows if max_rows > 0 else DEFAULT_MAX_ROWS)
