"""Trade classification: lifecycle status or rejection for one raw trade.

Pure function of its inputs. Storage, notification and copy-trading are
the reconciler's business.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from polysignal.clients.models import Trade
from polysignal.tracking.models import Activity, ActivityStatus, Side, Whale

DUPLICATE = "duplicate"
ORPHAN_SELL = "orphan_sell"
BELOW_MIN_USD = "below_min_usd"
PRICE_TOO_HIGH = "price_too_high"

REJECTION_REASONS = (DUPLICATE, ORPHAN_SELL, BELOW_MIN_USD, PRICE_TOO_HIGH)


@dataclass(frozen=True)
class Classification:
    status: Optional[ActivityStatus] = None
    reason: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.status is not None

    @classmethod
    def accept(cls, status: ActivityStatus) -> "Classification":
        return cls(status=status)

    @classmethod
    def reject(cls, reason: str) -> "Classification":
        return cls(reason=reason)


def passes_admission(
    trade: Trade,
    whale: Whale,
    max_price_for_storage: float,
) -> Optional[str]:
    """Rejection reason for an initial buy, or None if it may be stored."""
    if trade.usd_value < whale.min_usd_value:
        return BELOW_MIN_USD
    if trade.price > max_price_for_storage:
        return PRICE_TOO_HIGH
    return None


def classify_trade(
    trade: Trade,
    whale: Whale,
    root: Optional[Activity],
    position_open: bool,
    already_stored: bool = False,
    max_price_for_storage: float = 0.95,
) -> Classification:
    """Classify a raw trade against the whale's current root for its key.

    Args:
        trade: The incoming trade.
        whale: The tracked account that made it.
        root: The ``open`` activity for (whale, market, outcome), if any.
        position_open: Whether the position source still shows the position
            after this trade. Only consulted for sells.
        already_stored: Whether the transaction hash is already in the ledger.
        max_price_for_storage: Price ceiling for initial buys.
    """
    if already_stored:
        return Classification.reject(DUPLICATE)

    side = Side(trade.side)
    if side == Side.BUY:
        if root is not None:
            # top-ups of an admitted root bypass the admission filter
            return Classification.accept(ActivityStatus.ADDED)
        reason = passes_admission(trade, whale, max_price_for_storage)
        if reason is not None:
            return Classification.reject(reason)
        return Classification.accept(ActivityStatus.OPEN)

    if root is None:
        return Classification.reject(ORPHAN_SELL)
    if position_open:
        return Classification.accept(ActivityStatus.PARTIALLY_CLOSED)
    return Classification.accept(ActivityStatus.CLOSED)
