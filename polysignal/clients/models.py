"""Pydantic models for Polymarket Data API responses."""
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from polysignal.shared.time_utils import normalize_ts


class Trade(BaseModel):
    """Trade data from Data API ``/trades``."""
    side: str  # BUY or SELL
    condition_id: str = Field(alias="conditionId")
    outcome_index: int = Field(alias="outcomeIndex")
    size: float
    price: float
    timestamp: int
    transaction_hash: str = Field(alias="transactionHash")
    proxy_wallet: Optional[str] = Field(None, alias="proxyWallet")
    asset: Optional[str] = None
    title: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = Field(None, alias="eventSlug")
    outcome: Optional[str] = None
    icon: Optional[str] = None
    name: Optional[str] = None
    pseudonym: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("side")
    @classmethod
    def _upper_side(cls, v: str) -> str:
        side = v.upper()
        if side not in ("BUY", "SELL"):
            raise ValueError(f"unknown trade side {v!r}")
        return side

    @field_validator("timestamp", mode="before")
    @classmethod
    def _seconds(cls, v):
        return normalize_ts(v)

    @property
    def usd_value(self) -> float:
        return self.size * self.price

    @property
    def key(self) -> tuple[str, int]:
        return (self.condition_id, self.outcome_index)


class Position(BaseModel):
    """Open position data from Data API ``/positions``."""
    condition_id: str = Field(alias="conditionId")
    outcome_index: int = Field(alias="outcomeIndex")
    size: float
    avg_price: Optional[float] = Field(None, alias="avgPrice")
    percent_pnl: Optional[float] = Field(None, alias="percentPnl")
    cur_price: Optional[float] = Field(None, alias="curPrice")
    total_bought: Optional[float] = Field(None, alias="totalBought")
    realized_pnl: Optional[float] = Field(None, alias="realizedPnl")
    asset: Optional[str] = None
    title: Optional[str] = None
    slug: Optional[str] = None
    outcome: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def key(self) -> tuple[str, int]:
        return (self.condition_id, self.outcome_index)


class ClosedPosition(BaseModel):
    """Closed position summary from Data API ``/closed-positions``."""
    condition_id: str = Field(alias="conditionId")
    outcome_index: int = Field(alias="outcomeIndex")
    total_bought: float = Field(0.0, alias="totalBought")
    avg_price: float = Field(0.0, alias="avgPrice")
    realized_pnl: float = Field(0.0, alias="realizedPnl")
    cur_price: Optional[float] = Field(None, alias="curPrice")
    outcome: Optional[str] = None
    opposite_outcome: Optional[str] = Field(None, alias="oppositeOutcome")
    title: Optional[str] = None
    slug: Optional[str] = None
    timestamp: Optional[int] = None

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("timestamp", mode="before")
    @classmethod
    def _seconds(cls, v):
        return normalize_ts(v) if v is not None else None

    @property
    def key(self) -> tuple[str, int]:
        return (self.condition_id, self.outcome_index)

    @property
    def realized_outcome(self) -> Optional[str]:
        """The outcome that won, judged by the sign of the realized PnL."""
        if self.realized_pnl > 0:
            return self.outcome
        if self.realized_pnl < 0:
            return self.opposite_outcome
        return None
