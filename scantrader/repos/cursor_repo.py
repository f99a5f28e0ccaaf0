"""Cursor store — SQLite persistence of the scheduler's scan cursor."""

import json
import logging
from datetime import datetime, timezone

from scantrader.models.cursor import ScanCursor
from scantrader.repos.db import get_connection

logger = logging.getLogger("scantrader.repos")

CURSOR_KEY = "scan_cursor"


class CursorRepo:
    """Single-key store holding ``{profileIndex, assetBatchOffset}``.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def load(self) -> ScanCursor:
        """Return the persisted cursor, or a zero cursor if none is usable."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT value FROM scheduler_state WHERE key = ?", (CURSOR_KEY,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return ScanCursor()
        try:
            return ScanCursor.from_dict(json.loads(row["value"]))
        except ValueError as exc:
            logger.warning("Discarding unreadable scan cursor: %s", exc)
            return ScanCursor()

    def save(self, cursor: ScanCursor) -> None:
        """Upsert the cursor.  Writing the same value twice is a no-op."""
        updated_at = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO scheduler_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE
                    SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (CURSOR_KEY, json.dumps(cursor.to_dict()), updated_at),
            )
            conn.commit()
        finally:
            conn.close()
