"""Simulated copy-trade positions."""
from __future__ import annotations

import sqlite3

from polysignal.tracking.models import PositionStatus, SimulatedPosition


def _row_to_position(row: sqlite3.Row) -> SimulatedPosition:
    return SimulatedPosition(
        id=row["id"],
        whale_id=row["whale_id"],
        activity_id=row["activity_id"],
        condition_id=row["condition_id"],
        outcome_index=row["outcome_index"],
        outcome=row["outcome"],
        title=row["title"],
        simulated_investment=row["simulated_investment"],
        entry_price=row["entry_price"],
        shares_bought=row["shares_bought"],
        shares_sold=row["shares_sold"],
        entry_ts=row["entry_ts"],
        entry_tx=row["entry_tx"],
        exit_price=row["exit_price"],
        exit_ts=row["exit_ts"],
        exit_tx=row["exit_tx"],
        realized_pnl=row["realized_pnl"],
        percent_pnl=row["percent_pnl"],
        final_value=row["final_value"],
        realized_outcome=row["realized_outcome"],
        status=PositionStatus(row["status"]),
    )


class CopyTradeRepo:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, pos: SimulatedPosition) -> int:
        """Insert a new simulated position and commit. Sets ``pos.id``.

        Raises sqlite3.IntegrityError if a position already exists for the
        source activity.
        """
        cur = self.conn.execute(
            """INSERT INTO copy_trade_positions
               (whale_id, activity_id, condition_id, outcome_index, outcome, title,
                simulated_investment, entry_price, shares_bought, shares_sold,
                entry_ts, entry_tx, realized_pnl, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (pos.whale_id, pos.activity_id, pos.condition_id, pos.outcome_index,
             pos.outcome, pos.title, pos.simulated_investment, pos.entry_price,
             pos.shares_bought, pos.shares_sold, pos.entry_ts, pos.entry_tx,
             pos.realized_pnl, pos.status.value),
        )
        self.conn.commit()
        pos.id = cur.lastrowid
        return pos.id

    def get(self, position_id: int) -> SimulatedPosition | None:
        row = self.conn.execute(
            "SELECT * FROM copy_trade_positions WHERE id = ?", (position_id,),
        ).fetchone()
        return _row_to_position(row) if row else None

    def get_by_activity(self, activity_id: int) -> SimulatedPosition | None:
        row = self.conn.execute(
            "SELECT * FROM copy_trade_positions WHERE activity_id = ?", (activity_id,),
        ).fetchone()
        return _row_to_position(row) if row else None

    def open_positions(
        self,
        whale_id: int,
        condition_id: str,
        outcome_index: int,
    ) -> list[SimulatedPosition]:
        """Positions with shares remaining for the key, oldest entry first."""
        rows = self.conn.execute(
            """SELECT * FROM copy_trade_positions
               WHERE whale_id = ? AND condition_id = ? AND outcome_index = ?
                 AND status != 'closed'
               ORDER BY entry_ts, id""",
            (whale_id, condition_id, outcome_index),
        ).fetchall()
        return [_row_to_position(r) for r in rows]

    def update(self, pos: SimulatedPosition) -> None:
        """Persist the exit side of a position after a (partial) close."""
        self.conn.execute(
            """UPDATE copy_trade_positions
               SET shares_sold = ?, exit_price = ?, exit_ts = ?, exit_tx = ?,
                   realized_pnl = ?, percent_pnl = ?, final_value = ?,
                   realized_outcome = ?, status = ?
               WHERE id = ?""",
            (pos.shares_sold, pos.exit_price, pos.exit_ts, pos.exit_tx,
             pos.realized_pnl, pos.percent_pnl, pos.final_value,
             pos.realized_outcome, pos.status.value, pos.id),
        )
        self.conn.commit()

    def list_for_whale(self, whale_id: int) -> list[SimulatedPosition]:
        rows = self.conn.execute(
            "SELECT * FROM copy_trade_positions WHERE whale_id = ? ORDER BY entry_ts, id",
            (whale_id,),
        ).fetchall()
        return [_row_to_position(r) for r in rows]

    def commit(self) -> None:
        self.conn.commit()
