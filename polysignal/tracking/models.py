"""Domain records for whale tracking and copy-trading."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from polysignal.shared.math_utils import EPSILON


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ActivityStatus(str, Enum):
    """Lifecycle status of an admitted trade.

    ``open`` is the root of a position; ``added`` marks top-up buys;
    ``partially_closed`` and ``closed`` mark sells. Only the root moves
    forward (open -> closed); every other status is final once written.
    """
    OPEN = "open"
    ADDED = "added"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"

    @property
    def is_sell(self) -> bool:
        return self in (ActivityStatus.PARTIALLY_CLOSED, ActivityStatus.CLOSED)


class PositionStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"


PositionKey = tuple[str, int]  # (condition_id, outcome_index)


@dataclass
class Whale:
    id: int
    wallet_address: str
    label: Optional[str] = None
    category: str = "regular"
    subscription_type: str = "free"
    min_usd_value: float = 500.0
    frequency_limit: Optional[int] = None
    is_copytrade: bool = False
    copytrade_investment: float = 500.0
    partial_close_pct: float = 100.0
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.label or self.wallet_address

    def notification_limit(self, free_limit: int = 1, paid_limit: int = 3) -> int:
        """Surfaced-open budget per reset window."""
        if self.frequency_limit is not None:
            return max(0, self.frequency_limit)
        return paid_limit if self.subscription_type == "paid" else free_limit


@dataclass
class Activity:
    whale_id: int
    transaction_hash: str
    side: Side
    condition_id: str
    outcome_index: int
    size: float
    price: float
    usd_value: float
    trade_ts: int
    status: ActivityStatus
    id: Optional[int] = None
    outcome: Optional[str] = None
    asset: Optional[str] = None
    title: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None
    realized_pnl: Optional[float] = None
    percent_pnl: Optional[float] = None
    pnl_method: Optional[str] = None
    exit_price: Optional[float] = None
    trade_category: Optional[str] = None
    notification_handle: Optional[str] = None

    @property
    def key(self) -> PositionKey:
        return (self.condition_id, self.outcome_index)

    @property
    def is_buy(self) -> bool:
        return self.side == Side.BUY


@dataclass
class FrequencyState:
    whale_id: int
    remaining: int
    reset_at: float


@dataclass
class SimulatedPosition:
    whale_id: int
    condition_id: str
    outcome_index: int
    simulated_investment: float
    entry_price: float
    shares_bought: float
    entry_ts: int
    id: Optional[int] = None
    activity_id: Optional[int] = None
    outcome: Optional[str] = None
    title: Optional[str] = None
    entry_tx: Optional[str] = None
    shares_sold: float = 0.0
    exit_price: Optional[float] = None
    exit_ts: Optional[int] = None
    exit_tx: Optional[str] = None
    realized_pnl: float = 0.0
    percent_pnl: Optional[float] = None
    final_value: Optional[float] = None
    realized_outcome: Optional[str] = None
    status: PositionStatus = PositionStatus.OPEN

    @property
    def shares_remaining(self) -> float:
        remaining = self.shares_bought - self.shares_sold
        return remaining if remaining > EPSILON else 0.0

    @property
    def key(self) -> PositionKey:
        return (self.condition_id, self.outcome_index)
