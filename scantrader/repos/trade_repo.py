"""Trade repository — SQLite CRUD for the trades table."""

from datetime import datetime, timezone
from typing import Optional

from scantrader.repos.db import get_connection


class TradeRepo:
    """Data access layer for entry orders the gateway filled.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_trade(
        self,
        symbol: str,
        side: str,
        quantity: float,
        leverage: int,
        order_id: Optional[str],
        client_order_id: str,
        profile_name: str,
        entry_price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> int:
        """Insert a new open trade and return its ``id``."""
        opened_at = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (symbol, side, quantity, leverage, entry_price, stop_loss,
                     take_profit, order_id, client_order_id, profile_name,
                     opened_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    symbol, side, quantity, leverage, entry_price, stop_loss,
                    take_profit, order_id, client_order_id, profile_name,
                    opened_at,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def mark_closed(self, symbol: str, side: Optional[str] = None) -> int:
        """Mark open trades on *symbol* closed; returns rows updated.

        With *side* (the entry side, ``BUY`` or ``SELL``) only that leg is
        closed, which keeps the other hedge-mode leg open.
        """
        query = "UPDATE trades SET status = 'closed' WHERE symbol = ? AND status = 'open'"
        params: list = [symbol]
        if side:
            query += " AND side = ?"
            params.append(side)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(query, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 20,
        status_filter: Optional[str] = None,
        profile_name: Optional[str] = None,
    ) -> dict:
        """Return recent trades.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if status_filter:
                conditions.append("status = ?")
                params.append(status_filter)
            if profile_name:
                conditions.append("profile_name = ?")
                params.append(profile_name)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            trades = [dict(row) for row in rows]
            return {"trades": trades, "total": total}
        finally:
            conn.close()
