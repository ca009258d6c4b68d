"""Durable rate-limiter state, one row per whale."""
from __future__ import annotations

import sqlite3

from polysignal.tracking.models import FrequencyState


class FrequencyRepo:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def load(self, whale_id: int) -> FrequencyState | None:
        row = self.conn.execute(
            "SELECT whale_id, remaining, reset_at FROM whale_frequency WHERE whale_id = ?",
            (whale_id,),
        ).fetchone()
        return FrequencyState(row[0], row[1], row[2]) if row else None

    def load_all(self) -> list[FrequencyState]:
        rows = self.conn.execute(
            "SELECT whale_id, remaining, reset_at FROM whale_frequency ORDER BY whale_id"
        ).fetchall()
        return [FrequencyState(r[0], r[1], r[2]) for r in rows]

    def save(self, state: FrequencyState) -> None:
        """Upsert and commit."""
        self.conn.execute(
            """INSERT INTO whale_frequency (whale_id, remaining, reset_at, updated_at)
               VALUES (?, ?, ?, datetime('now'))
               ON CONFLICT(whale_id) DO UPDATE SET
                   remaining = excluded.remaining,
                   reset_at = excluded.reset_at,
                   updated_at = excluded.updated_at""",
            (state.whale_id, state.remaining, state.reset_at),
        )
        self.conn.commit()

    def commit(self) -> None:
        self.conn.commit()
