"""Simulated copy-trade positions mirroring a whale at fixed investment size.

Only a whale's initial buy opens a simulated position; top-ups are not
mirrored. Sells close the mirror proportionally, oldest position first.
"""
from __future__ import annotations

import logging
from typing import Optional

from polysignal.config import CopyTradeConfig
from polysignal.db.copytrade_repo import CopyTradeRepo
from polysignal.shared.math_utils import EPSILON, percent_of
from polysignal.tracking.models import (
    Activity,
    ActivityStatus,
    PositionStatus,
    SimulatedPosition,
    Whale,
)

log = logging.getLogger("copytrade")


def fraction_to_sell(
    shares_sold_by_whale: float,
    tracked_whale_shares: float,
    partial_close_pct: float,
    full_close: bool = False,
) -> float:
    """Share of our simulated holding to sell for one whale sale (0 to 1)."""
    if full_close:
        return 1.0
    if tracked_whale_shares <= EPSILON:
        fraction_sold = 1.0
    else:
        fraction_sold = min(1.0, shares_sold_by_whale / tracked_whale_shares)
    pct = min(100.0, max(0.0, partial_close_pct))
    return fraction_sold * pct / 100.0


class CopyTradeEngine:
    def __init__(self, positions: CopyTradeRepo, config: CopyTradeConfig | None = None):
        self.positions = positions
        self.config = config or CopyTradeConfig()

    def on_activity(
        self,
        whale: Whale,
        activity: Activity,
        tracked_whale_shares: Optional[float] = None,
    ) -> list[SimulatedPosition]:
        """Mirror one admitted activity. Returns the positions touched."""
        if activity.status == ActivityStatus.OPEN:
            pos = self.on_open(whale, activity)
            return [pos] if pos is not None else []
        if activity.status == ActivityStatus.ADDED:
            return []
        if activity.status in (ActivityStatus.PARTIALLY_CLOSED, ActivityStatus.CLOSED):
            return self.on_sell(whale, activity, tracked_whale_shares)
        raise ValueError(f"unhandled activity status {activity.status!r}")

    def on_open(self, whale: Whale, activity: Activity) -> Optional[SimulatedPosition]:
        if activity.price <= EPSILON:
            log.warning(f"Cannot open copy position at price {activity.price} (tx {activity.transaction_hash})")
            return None
        if activity.id is not None:
            existing = self.positions.get_by_activity(activity.id)
            if existing is not None:
                return existing

        investment = whale.copytrade_investment or self.config.default_investment
        pos = SimulatedPosition(
            whale_id=whale.id,
            activity_id=activity.id,
            condition_id=activity.condition_id,
            outcome_index=activity.outcome_index,
            outcome=activity.outcome,
            title=activity.title,
            simulated_investment=investment,
            entry_price=activity.price,
            shares_bought=investment / activity.price,
            entry_ts=activity.trade_ts,
            entry_tx=activity.transaction_hash,
        )
        self.positions.insert(pos)
        log.info(
            f"Copy OPEN {whale.display_name} {pos.shares_bought:.2f} sh @ {pos.entry_price:.3f} "
            f"(${investment:.0f}) {activity.title or activity.condition_id}"
        )
        return pos

    def on_sell(
        self,
        whale: Whale,
        activity: Activity,
        tracked_whale_shares: Optional[float] = None,
    ) -> list[SimulatedPosition]:
        """Close our mirror in proportion to what the whale sold.

        ``tracked_whale_shares`` is the whale's holding just before this sale.
        A ``closed`` sale always closes the whole mirror.
        """
        positions = self.positions.open_positions(
            whale.id, activity.condition_id, activity.outcome_index,
        )
        ours = sum(p.shares_remaining for p in positions)
        if ours <= EPSILON:
            return []

        full_close = activity.status == ActivityStatus.CLOSED
        fraction = fraction_to_sell(
            activity.size,
            tracked_whale_shares if tracked_whale_shares is not None else 0.0,
            whale.partial_close_pct,
            full_close=full_close,
        )
        to_sell = ours if full_close else ours * fraction
        if to_sell <= EPSILON:
            return []

        return self._sell_fifo(
            positions, to_sell, activity.price, activity.trade_ts, activity.transaction_hash,
        )

    def close_all(
        self,
        whale: Whale,
        condition_id: str,
        outcome_index: int,
        exit_price: float,
        exit_ts: Optional[int] = None,
        exit_tx: Optional[str] = None,
        realized_outcome: Optional[str] = None,
    ) -> list[SimulatedPosition]:
        """Fully close every mirror of the key, e.g. after an external close."""
        positions = self.positions.open_positions(whale.id, condition_id, outcome_index)
        ours = sum(p.shares_remaining for p in positions)
        if ours <= EPSILON:
            return []
        return self._sell_fifo(
            positions, ours, exit_price, exit_ts, exit_tx, realized_outcome=realized_outcome,
        )

    def _sell_fifo(
        self,
        positions: list[SimulatedPosition],
        shares: float,
        exit_price: float,
        exit_ts: Optional[int],
        exit_tx: Optional[str],
        realized_outcome: Optional[str] = None,
    ) -> list[SimulatedPosition]:
        touched = []
        to_sell = shares
        for pos in positions:
            if to_sell <= EPSILON:
                break
            take = min(pos.shares_remaining, to_sell)
            if take <= EPSILON:
                continue
            to_sell -= take

            pos.shares_sold += take
            pos.realized_pnl += take * (exit_price - pos.entry_price)
            pos.exit_price = exit_price
            pos.exit_ts = exit_ts
            pos.exit_tx = exit_tx
            if pos.shares_remaining <= EPSILON:
                pos.status = PositionStatus.CLOSED
                pos.final_value = pos.simulated_investment + pos.realized_pnl
                pos.percent_pnl = percent_of(pos.realized_pnl, pos.simulated_investment)
                if realized_outcome is not None:
                    pos.realized_outcome = realized_outcome
            else:
                pos.status = PositionStatus.PARTIALLY_CLOSED
                pos.percent_pnl = percent_of(pos.realized_pnl, pos.shares_sold * pos.entry_price)

            self.positions.update(pos)
            touched.append(pos)
            log.info(
                f"Copy {pos.status.value.upper()} #{pos.id} sold {take:.2f} sh @ {exit_price:.3f} "
                f"realized ${pos.realized_pnl:+.2f}"
            )
        return touched
