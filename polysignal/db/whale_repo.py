"""CRUD operations for the tracked_whales table."""
from __future__ import annotations

import sqlite3

from polysignal.config import MIN_USD_VALUE_OPTIONS, SUBSCRIPTION_TIERS, WHALE_CATEGORIES
from polysignal.tracking.models import Whale


def _row_to_whale(row: sqlite3.Row) -> Whale:
    return Whale(
        id=row["id"],
        wallet_address=row["wallet_address"],
        label=row["label"],
        category=row["category"],
        subscription_type=row["subscription_type"],
        min_usd_value=row["min_usd_value"],
        frequency_limit=row["frequency_limit"],
        is_copytrade=bool(row["is_copytrade"]),
        copytrade_investment=row["copytrade_investment"],
        partial_close_pct=row["partial_close_pct"],
        is_active=bool(row["is_active"]),
    )


def validate_whale_settings(
    category: str,
    subscription_type: str,
    min_usd_value: float,
    partial_close_pct: float,
    copytrade_investment: float,
) -> None:
    """Raise ValueError on settings the tracker cannot work with."""
    if category not in WHALE_CATEGORIES:
        raise ValueError(f"category must be one of {WHALE_CATEGORIES}, got {category!r}")
    if subscription_type not in SUBSCRIPTION_TIERS:
        raise ValueError(
            f"subscription_type must be one of {SUBSCRIPTION_TIERS}, got {subscription_type!r}"
        )
    if min_usd_value not in MIN_USD_VALUE_OPTIONS:
        raise ValueError(f"min_usd_value must be one of {MIN_USD_VALUE_OPTIONS}, got {min_usd_value}")
    if not 0 <= partial_close_pct <= 100:
        raise ValueError(f"partial_close_pct must be within 0-100, got {partial_close_pct}")
    if copytrade_investment <= 0:
        raise ValueError(f"copytrade_investment must be positive, got {copytrade_investment}")


class WhaleRepo:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def add(
        self,
        wallet_address: str,
        label: str | None = None,
        category: str = "regular",
        subscription_type: str = "free",
        min_usd_value: float = 500,
        frequency_limit: int | None = None,
        is_copytrade: bool = False,
        copytrade_investment: float = 500.0,
        partial_close_pct: float = 100.0,
    ) -> Whale:
        """Insert a tracked whale. Wallet addresses are stored lower-case."""
        validate_whale_settings(
            category, subscription_type, min_usd_value,
            partial_close_pct, copytrade_investment,
        )
        if frequency_limit is not None and frequency_limit < 0:
            raise ValueError(f"frequency_limit must be >= 0, got {frequency_limit}")

        cur = self.conn.execute(
            """INSERT INTO tracked_whales
               (wallet_address, label, category, subscription_type, min_usd_value,
                frequency_limit, is_copytrade, copytrade_investment, partial_close_pct)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (wallet_address.lower(), label, category, subscription_type, min_usd_value,
             frequency_limit, int(is_copytrade), copytrade_investment, partial_close_pct),
        )
        self.conn.commit()
        return self.get(cur.lastrowid)

    def get(self, whale_id: int) -> Whale | None:
        row = self.conn.execute(
            "SELECT * FROM tracked_whales WHERE id = ?", (whale_id,),
        ).fetchone()
        return _row_to_whale(row) if row else None

    def get_by_wallet(self, wallet_address: str) -> Whale | None:
        row = self.conn.execute(
            "SELECT * FROM tracked_whales WHERE wallet_address = ?",
            (wallet_address.lower(),),
        ).fetchone()
        return _row_to_whale(row) if row else None

    def list_active(self) -> list[Whale]:
        rows = self.conn.execute(
            "SELECT * FROM tracked_whales WHERE is_active = 1 ORDER BY id"
        ).fetchall()
        return [_row_to_whale(r) for r in rows]

    def list_all(self) -> list[Whale]:
        rows = self.conn.execute("SELECT * FROM tracked_whales ORDER BY id").fetchall()
        return [_row_to_whale(r) for r in rows]

    def set_active(self, wallet_address: str, active: bool) -> bool:
        cur = self.conn.execute(
            "UPDATE tracked_whales SET is_active = ? WHERE wallet_address = ?",
            (int(active), wallet_address.lower()),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def commit(self) -> None:
        self.conn.commit()
