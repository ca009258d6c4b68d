"""CRUD operations for the whale_activity table (the admitted-trade ledger)."""
from __future__ import annotations

import sqlite3
from typing import Iterable

from polysignal.tracking.models import Activity, ActivityStatus, Side

_COLUMNS = (
    "whale_id", "transaction_hash", "side", "condition_id", "outcome_index",
    "outcome", "asset", "title", "slug", "event_slug", "size", "price",
    "usd_value", "trade_ts", "status", "realized_pnl", "percent_pnl",
    "pnl_method", "exit_price", "trade_category", "notification_handle",
)


def _row_to_activity(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row["id"],
        whale_id=row["whale_id"],
        transaction_hash=row["transaction_hash"],
        side=Side(row["side"]),
        condition_id=row["condition_id"],
        outcome_index=row["outcome_index"],
        outcome=row["outcome"],
        asset=row["asset"],
        title=row["title"],
        slug=row["slug"],
        event_slug=row["event_slug"],
        size=row["size"],
        price=row["price"],
        usd_value=row["usd_value"],
        trade_ts=row["trade_ts"],
        status=ActivityStatus(row["status"]),
        realized_pnl=row["realized_pnl"],
        percent_pnl=row["percent_pnl"],
        pnl_method=row["pnl_method"],
        exit_price=row["exit_price"],
        trade_category=row["trade_category"],
        notification_handle=row["notification_handle"],
    )


class ActivityRepo:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, activity: Activity) -> int:
        """Insert an admitted activity and commit. Sets and returns ``activity.id``.

        Raises sqlite3.IntegrityError on a duplicate transaction hash or a
        second open root for the same key.
        """
        values = []
        for col in _COLUMNS:
            value = getattr(activity, col)
            if isinstance(value, (Side, ActivityStatus)):
                value = value.value
            values.append(value)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cur = self.conn.execute(
            f"INSERT INTO whale_activity ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        self.conn.commit()
        activity.id = cur.lastrowid
        return activity.id

    def get(self, activity_id: int) -> Activity | None:
        row = self.conn.execute(
            "SELECT * FROM whale_activity WHERE id = ?", (activity_id,),
        ).fetchone()
        return _row_to_activity(row) if row else None

    def existing_hashes(self, whale_id: int, hashes: Iterable[str]) -> set[str]:
        """Subset of ``hashes`` already stored for this whale."""
        wanted = [h for h in set(hashes) if h]
        found: set[str] = set()
        # stay well below SQLite's bound-parameter limit
        for i in range(0, len(wanted), 500):
            chunk = wanted[i:i + 500]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.conn.execute(
                f"""SELECT transaction_hash FROM whale_activity
                    WHERE whale_id = ? AND transaction_hash IN ({placeholders})""",
                (whale_id, *chunk),
            ).fetchall()
            found.update(r[0] for r in rows)
        return found

    def has_hash(self, whale_id: int, transaction_hash: str) -> bool:
        return bool(self.existing_hashes(whale_id, [transaction_hash]))

    def find_open_root(
        self,
        whale_id: int,
        condition_id: str,
        outcome_index: int,
    ) -> Activity | None:
        row = self.conn.execute(
            """SELECT * FROM whale_activity
               WHERE whale_id = ? AND condition_id = ? AND outcome_index = ?
                 AND status = 'open'""",
            (whale_id, condition_id, outcome_index),
        ).fetchone()
        return _row_to_activity(row) if row else None

    def open_roots(self, whale_id: int) -> list[Activity]:
        rows = self.conn.execute(
            """SELECT * FROM whale_activity
               WHERE whale_id = ? AND status = 'open'
               ORDER BY trade_ts, id""",
            (whale_id,),
        ).fetchall()
        return [_row_to_activity(r) for r in rows]

    def lifecycle_buys(
        self,
        whale_id: int,
        condition_id: str,
        outcome_index: int,
        since_ts: int,
        until_ts: int | None = None,
    ) -> list[Activity]:
        """Buys of the lifecycle starting at ``since_ts``, oldest first."""
        query = """SELECT * FROM whale_activity
                   WHERE whale_id = ? AND condition_id = ? AND outcome_index = ?
                     AND side = 'BUY' AND trade_ts >= ?"""
        params: list = [whale_id, condition_id, outcome_index, since_ts]
        if until_ts is not None:
            query += " AND trade_ts <= ?"
            params.append(until_ts)
        query += " ORDER BY trade_ts, id"
        rows = self.conn.execute(query, params).fetchall()
        return [_row_to_activity(r) for r in rows]

    def lifecycle_sells(
        self,
        whale_id: int,
        condition_id: str,
        outcome_index: int,
        since_ts: int,
        until_ts: int | None = None,
    ) -> list[Activity]:
        """Stored sells of the lifecycle up to ``until_ts``, oldest first.

        A sale is priced before it is stored, so sells sharing its timestamp
        are earlier trades of the same batch and count as prior.
        """
        query = """SELECT * FROM whale_activity
                   WHERE whale_id = ? AND condition_id = ? AND outcome_index = ?
                     AND side = 'SELL' AND status IN ('partially_closed', 'closed')
                     AND trade_ts >= ?"""
        params: list = [whale_id, condition_id, outcome_index, since_ts]
        if until_ts is not None:
            query += " AND trade_ts <= ?"
            params.append(until_ts)
        query += " ORDER BY trade_ts, id"
        rows = self.conn.execute(query, params).fetchall()
        return [_row_to_activity(r) for r in rows]

    def close_root(
        self,
        activity_id: int,
        realized_pnl: float | None = None,
        percent_pnl: float | None = None,
        pnl_method: str | None = None,
        exit_price: float | None = None,
    ) -> bool:
        """Advance an open root to closed. Returns False if it was not open."""
        cur = self.conn.execute(
            """UPDATE whale_activity
               SET status = 'closed',
                   realized_pnl = COALESCE(?, realized_pnl),
                   percent_pnl = COALESCE(?, percent_pnl),
                   pnl_method = COALESCE(?, pnl_method),
                   exit_price = COALESCE(?, exit_price)
               WHERE id = ? AND status = 'open'""",
            (realized_pnl, percent_pnl, pnl_method, exit_price, activity_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def set_notification_handle(self, activity_id: int, handle: str) -> None:
        self.conn.execute(
            "UPDATE whale_activity SET notification_handle = ? WHERE id = ?",
            (handle, activity_id),
        )
        self.conn.commit()

    def list_for_whale(self, whale_id: int, limit: int = 50) -> list[Activity]:
        rows = self.conn.execute(
            """SELECT * FROM whale_activity WHERE whale_id = ?
               ORDER BY trade_ts DESC, id DESC LIMIT ?""",
            (whale_id, limit),
        ).fetchall()
        return [_row_to_activity(r) for r in rows]

    def count_by_status(self, whale_id: int | None = None) -> dict[str, int]:
        query = "SELECT status, COUNT(*) FROM whale_activity"
        params: tuple = ()
        if whale_id is not None:
            query += " WHERE whale_id = ?"
            params = (whale_id,)
        query += " GROUP BY status"
        return {row[0]: row[1] for row in self.conn.execute(query, params).fetchall()}

    def commit(self) -> None:
        self.conn.commit()
