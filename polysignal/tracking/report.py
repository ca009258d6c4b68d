"""Copy-trade performance summary per whale."""
from __future__ import annotations

import sqlite3

import pandas as pd

SUMMARY_COLUMNS = [
    "whale_id", "whale", "positions", "open", "closed", "wins",
    "win_rate", "invested", "realized_pnl", "roi_pct",
]


def load_positions(conn: sqlite3.Connection) -> pd.DataFrame:
    return pd.read_sql_query(
        """SELECT p.*, COALESCE(w.label, w.wallet_address) AS whale
           FROM copy_trade_positions p
           JOIN tracked_whales w ON w.id = p.whale_id
           ORDER BY p.whale_id, p.entry_ts""",
        conn,
    )


def copytrade_summary(conn: sqlite3.Connection) -> pd.DataFrame:
    """One row per whale with simulated positions.

    ``win_rate`` is wins over closed positions; ``roi_pct`` is realized PnL
    over the total simulated investment. Both are percentages.
    """
    df = load_positions(conn)
    if df.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    df["is_open"] = df["status"] != "closed"
    df["is_closed"] = df["status"] == "closed"
    df["is_win"] = df["is_closed"] & (df["realized_pnl"] > 0)

    summary = df.groupby(["whale_id", "whale"], as_index=False).agg(
        positions=("id", "count"),
        open=("is_open", "sum"),
        closed=("is_closed", "sum"),
        wins=("is_win", "sum"),
        invested=("simulated_investment", "sum"),
        realized_pnl=("realized_pnl", "sum"),
    )
    closed = summary["closed"].where(summary["closed"] > 0)
    summary["win_rate"] = (summary["wins"] / closed * 100).round(2)
    invested = summary["invested"].where(summary["invested"] > 0)
    summary["roi_pct"] = (summary["realized_pnl"] / invested * 100).round(2)
    summary["realized_pnl"] = summary["realized_pnl"].round(2)
    return summary[SUMMARY_COLUMNS]
