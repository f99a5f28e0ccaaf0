"""Audit log repository — SQLite operations for the audit_logs table."""

import json
from datetime import datetime, timezone
from typing import Optional

from scantrader.repos.db import get_connection


class AuditRepo:
    """Data access layer for audit records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert(self, action: str, level: str, details: dict) -> int:
        """Insert an audit record and return its ``id``."""
        created_at = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO audit_logs (action, level, details, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (action, level, json.dumps(details, default=str), created_at),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def list(
        self,
        limit: int = 100,
        offset: int = 0,
        action: Optional[str] = None,
    ) -> list[dict]:
        """Return audit records newest-first with ``details`` decoded."""
        conn = get_connection(self._db_path)
        try:
            if action:
                rows = conn.execute(
                    """
                    SELECT * FROM audit_logs WHERE action = ?
                    ORDER BY id DESC LIMIT ? OFFSET ?
                    """,
                    (action, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_logs ORDER BY id DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
        finally:
            conn.close()

        records = []
        for row in rows:
            record = dict(row)
            record["details"] = json.loads(record["details"])
            records.append(record)
        return records
