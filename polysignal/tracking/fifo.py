"""FIFO cost-basis PnL for whale sales, with an average-price fallback.

Lot state is never stored. Every call rebuilds the lots of the current
position lifecycle from the activity ledger and replays the earlier sells
against them, oldest lot first. That makes pricing a sale idempotent at the
cost of O(sells) work per sale, which is negligible for real positions.

FIFO is abandoned in favour of the externally reported average buy price
when the ledger does not hold enough buys to cover the sale, or when the
shares it says should remain disagree with the position source by more than
the configured tolerance (usually because small buys were never admitted).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from polysignal.config import PnlConfig
from polysignal.db.activity_repo import ActivityRepo
from polysignal.shared.math_utils import EPSILON, percent_of
from polysignal.tracking.models import Activity

log = logging.getLogger("tracker")

METHOD_FIFO = "fifo"
METHOD_AVG_PRICE = "avg_price"
METHOD_REPORTED = "reported"


@dataclass(frozen=True)
class Lot:
    shares: float
    price: float
    activity_id: Optional[int] = None


@dataclass(frozen=True)
class PnlResult:
    realized_pnl: Optional[float]
    percent_pnl: Optional[float]
    method: Optional[str]
    cost_basis: Optional[float] = None

    @property
    def defined(self) -> bool:
        return self.realized_pnl is not None

    @classmethod
    def undefined(cls) -> "PnlResult":
        return cls(None, None, None)


def lots_from_activities(buys: Iterable[Activity]) -> list[Lot]:
    return [Lot(a.size, a.price, a.id) for a in buys if a.size > EPSILON]


def replay_sells(lots: list[Lot], sold: Iterable[float]) -> list[Lot]:
    """Deduct earlier sales from the oldest lots. Returns the lots left over.

    Sales larger than the remaining lots simply exhaust them.
    """
    remaining = list(lots)
    for shares in sold:
        to_take = shares
        while to_take > EPSILON and remaining:
            head = remaining[0]
            if head.shares <= to_take + EPSILON:
                to_take -= head.shares
                remaining.pop(0)
            else:
                remaining[0] = replace(head, shares=head.shares - to_take)
                to_take = 0.0
    return remaining


def total_shares(lots: Iterable[Lot]) -> float:
    return sum(lot.shares for lot in lots)


def fifo_cost_basis(lots: list[Lot], shares_sold: float) -> Optional[float]:
    """Cost of ``shares_sold`` taken oldest first, or None if lots run out."""
    cost = 0.0
    to_take = shares_sold
    for lot in lots:
        if to_take <= EPSILON:
            break
        take = min(lot.shares, to_take)
        cost += take * lot.price
        to_take -= take
    if to_take > EPSILON:
        return None
    return cost


def size_mismatch(
    remaining: float,
    shares_sold: float,
    current_size: Optional[float],
    tolerance: float,
) -> bool:
    """Whether the ledger's post-sale size disagrees with the source's."""
    if current_size is None:
        return False
    return abs((remaining - shares_sold) - current_size) > tolerance


def priced(profit: float, basis: float, method: str) -> PnlResult:
    if basis <= EPSILON:
        return PnlResult.undefined()
    return PnlResult(profit, percent_of(profit, basis), method, basis)


def compute_fifo_pnl(
    lots: list[Lot],
    prior_sells: Iterable[float],
    shares_sold: float,
    sale_price: float,
    current_size: Optional[float] = None,
    tolerance: float = 50.0,
) -> Optional[PnlResult]:
    """FIFO realized PnL for one sale. None means use the fallback."""
    remaining = replay_sells(lots, prior_sells)
    if size_mismatch(total_shares(remaining), shares_sold, current_size, tolerance):
        return None
    basis = fifo_cost_basis(remaining, shares_sold)
    if basis is None:
        return None
    return priced(shares_sold * sale_price - basis, basis, METHOD_FIFO)


def average_price_pnl(
    shares_sold: float,
    sale_price: float,
    avg_price: Optional[float],
) -> PnlResult:
    """Realized PnL against an average buy price. Undefined without one."""
    if avg_price is None or avg_price <= 0:
        return PnlResult.undefined()
    return priced(
        shares_sold * (sale_price - avg_price),
        shares_sold * avg_price,
        METHOD_AVG_PRICE,
    )


class PnlEngine:
    """Prices sales against the ledger. Reads only, never writes."""

    def __init__(self, activities: ActivityRepo, config: PnlConfig | None = None):
        self.activities = activities
        self.config = config or PnlConfig()

    def _lifecycle(
        self,
        root: Activity,
        until_ts: Optional[int] = None,
    ) -> tuple[list[Lot], list[float]]:
        buys = self.activities.lifecycle_buys(
            root.whale_id, root.condition_id, root.outcome_index,
            since_ts=root.trade_ts, until_ts=until_ts,
        )
        sells = self.activities.lifecycle_sells(
            root.whale_id, root.condition_id, root.outcome_index,
            since_ts=root.trade_ts, until_ts=until_ts,
        )
        return lots_from_activities(buys), [s.size for s in sells]

    def remaining_lots(self, root: Activity) -> list[Lot]:
        """Lots still held after every stored sale of the lifecycle."""
        lots, sold = self._lifecycle(root)
        return replay_sells(lots, sold)

    def remaining_shares(self, root: Activity) -> float:
        return total_shares(self.remaining_lots(root))

    def realized_for_sale(
        self,
        root: Activity,
        shares_sold: float,
        sale_price: float,
        sale_ts: int,
        current_size: Optional[float] = None,
        avg_price: Optional[float] = None,
    ) -> PnlResult:
        """Realized PnL of a sale that is about to be stored.

        Args:
            root: The open root of the position being sold.
            shares_sold: Shares in this sale.
            sale_price: Unit price of this sale.
            sale_ts: Sale timestamp; later ledger rows are ignored.
            current_size: Position size reported after the sale, if known.
            avg_price: Reported average buy price for the fallback.
        """
        lots, sold = self._lifecycle(root, until_ts=sale_ts)
        remaining = replay_sells(lots, sold)
        held = total_shares(remaining)

        if size_mismatch(held, shares_sold, current_size, self.config.size_tolerance):
            log.info(
                f"FIFO-FALLBACK size mismatch on {root.condition_id}:{root.outcome_index} "
                f"(ledger {held - shares_sold:.2f} vs source {current_size:.2f} after sale)"
            )
            return average_price_pnl(shares_sold, sale_price, avg_price)

        basis = fifo_cost_basis(remaining, shares_sold)
        if basis is None:
            log.info(
                f"FIFO-FALLBACK insufficient lots on {root.condition_id}:{root.outcome_index} "
                f"(held {held:.2f}, sold {shares_sold:.2f})"
            )
            return average_price_pnl(shares_sold, sale_price, avg_price)

        return priced(shares_sold * sale_price - basis, basis, METHOD_FIFO)

    def realized_for_close(
        self,
        root: Activity,
        exit_price: Optional[float],
        reported_pnl: Optional[float] = None,
        reported_basis: Optional[float] = None,
    ) -> PnlResult:
        """Lifecycle PnL when the source reports the position gone.

        PnL already realized by stored sells plus the remaining lots priced at
        ``exit_price``, as a percent of the lifecycle buy cost. Falls back to
        the realized PnL the source reports for the whole position.
        """
        buys = self.activities.lifecycle_buys(
            root.whale_id, root.condition_id, root.outcome_index, since_ts=root.trade_ts,
        )
        sells = self.activities.lifecycle_sells(
            root.whale_id, root.condition_id, root.outcome_index, since_ts=root.trade_ts,
        )
        remaining = replay_sells(lots_from_activities(buys), [s.size for s in sells])
        held = total_shares(remaining)
        if held > EPSILON and exit_price is not None:
            basis = fifo_cost_basis(remaining, held)
            if basis is not None and basis > EPSILON:
                already = sum(s.realized_pnl for s in sells if s.realized_pnl is not None)
                profit = already + held * exit_price - basis
                return priced(profit, sum(b.size * b.price for b in buys), METHOD_FIFO)

        log.info(
            f"FIFO-FALLBACK close of {root.condition_id}:{root.outcome_index} "
            f"uses reported pnl (held {held:.2f})"
        )
        if reported_pnl is None:
            return PnlResult.undefined()
        return PnlResult(
            reported_pnl,
            percent_of(reported_pnl, reported_basis or 0.0),
            METHOD_REPORTED,
            reported_basis,
        )
