"""One reconciliation pass over every tracked whale.

Per whale: pull recent trades, classify and store the new ones oldest
first, then close any open root whose position has disappeared from the
position source. Admitted trades are mirrored by the copy-trade engine and
status changes are handed to the alert dispatcher. Whales run concurrently
and fail independently. Only the HTTP calls overlap; the sqlite repos are
synchronous and block the event loop while they run.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from polysignal.clients.models import ClosedPosition, Position, Trade
from polysignal.config import AppConfig
from polysignal.db.activity_repo import ActivityRepo
from polysignal.db.whale_repo import WhaleRepo
from polysignal.shared.math_utils import EPSILON, derived_exit_price, percent_of
from polysignal.tracking.alerts import AlertDispatcher
from polysignal.tracking.classifier import classify_trade
from polysignal.tracking.copytrade import CopyTradeEngine
from polysignal.tracking.fifo import PnlEngine, PnlResult, total_shares
from polysignal.tracking.models import (
    Activity,
    ActivityStatus,
    PositionKey,
    Side,
    Whale,
)
from polysignal.tracking.rate_limiter import RateLimiter

log = logging.getLogger("tracker")
copy_log = logging.getLogger("copytrade")


class TradeSource(Protocol):
    async def get_recent_trades(self, wallet: str, limit: int = 50) -> list[Trade]: ...

    async def get_positions(self, wallet: str, condition_ids=None) -> list[Position]: ...

    async def get_closed_positions(self, wallet: str, condition_ids=None) -> list[ClosedPosition]: ...


class CategorySource(Protocol):
    async def get_market_category(self, slug: Optional[str]) -> Optional[str]: ...


@dataclass
class WhalePassStats:
    whale_id: int
    fetched: int = 0
    new: int = 0
    admitted: int = 0
    rejected: dict[str, int] = field(default_factory=dict)
    notified: int = 0
    rate_limited: int = 0
    closed_external: int = 0
    errors: int = 0

    def reject(self, reason: str) -> None:
        self.rejected[reason] = self.rejected.get(reason, 0) + 1


def order_for_processing(trades: list[Trade], known: set[str]) -> list[Trade]:
    """New trades oldest first, one per transaction hash.

    The feed lists newest first, so it is reversed before the stable sort to
    keep same-second trades in execution order.
    """
    seen: set[str] = set()
    fresh = []
    for trade in reversed(trades):
        if trade.transaction_hash in known or trade.transaction_hash in seen:
            continue
        seen.add(trade.transaction_hash)
        fresh.append(trade)
    return sorted(fresh, key=lambda t: t.timestamp)


def last_sell_index(trades: list[Trade]) -> dict[PositionKey, int]:
    last: dict[PositionKey, int] = {}
    for i, trade in enumerate(trades):
        if trade.side == Side.SELL.value:
            last[trade.key] = i
    return last


@dataclass
class _PassState:
    """What one whale's pass knows about the position source."""
    whale: Whale
    stats: WhalePassStats
    snapshot: dict[PositionKey, Position]
    last_sell: dict[PositionKey, int] = field(default_factory=dict)
    touched: set[PositionKey] = field(default_factory=set)
    closed: dict[PositionKey, ClosedPosition] = field(default_factory=dict)
    closed_fetched: set[str] = field(default_factory=set)


class Reconciler:
    def __init__(
        self,
        config: AppConfig,
        source: TradeSource,
        whales: WhaleRepo,
        activities: ActivityRepo,
        limiter: RateLimiter,
        pnl: PnlEngine,
        copytrade: CopyTradeEngine,
        dispatcher: Optional[AlertDispatcher] = None,
        categories: Optional[CategorySource] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.source = source
        self.whales = whales
        self.activities = activities
        self.limiter = limiter
        self.pnl = pnl
        self.copytrade = copytrade
        self.dispatcher = dispatcher
        self.categories = categories
        self.clock = clock

    async def poll_all(self) -> dict[int, WhalePassStats | BaseException]:
        """Run one pass for every active whale. Failures stay per whale."""
        whales = self.whales.list_active()
        if not whales:
            log.debug("No active whales to poll")
            return {}

        results = await asyncio.gather(
            *(self.process_whale(w) for w in whales),
            return_exceptions=True,
        )
        out: dict[int, WhalePassStats | BaseException] = {}
        for whale, result in zip(whales, results):
            out[whale.id] = result
            if isinstance(result, BaseException):
                log.error(
                    f"Pass failed for {whale.display_name}: {result}",
                    exc_info=(type(result), result, result.__traceback__),
                )
            elif result.admitted or result.closed_external:
                log.info(
                    f"{whale.display_name}: {result.new} new, {result.admitted} admitted, "
                    f"{result.closed_external} closed externally"
                )
        return out

    async def process_whale(self, whale: Whale) -> WhalePassStats:
        stats = WhalePassStats(whale.id)
        trades = await self.source.get_recent_trades(
            whale.wallet_address, limit=self.config.tracker.trades_per_poll,
        )
        stats.fetched = len(trades)

        known = self.activities.existing_hashes(whale.id, (t.transaction_hash for t in trades))
        fresh = order_for_processing(trades, known)
        stats.new = len(fresh)

        roots = self.activities.open_roots(whale.id)
        market_ids = {t.condition_id for t in fresh} | {r.condition_id for r in roots}
        if not market_ids:
            return stats

        positions = await self.source.get_positions(whale.wallet_address, market_ids)
        snapshot = {p.key: p for p in positions if p.size > EPSILON}

        state = _PassState(whale, stats, snapshot, last_sell=last_sell_index(fresh))

        for i, trade in enumerate(fresh):
            state.touched.add(trade.key)
            try:
                await self._process_trade(state, trade, i)
            except Exception:
                stats.errors += 1
                log.exception(f"Failed to process trade {trade.transaction_hash} for {whale.display_name}")

        await self._detect_closes(state)
        return stats

    async def _closed_summaries(
        self,
        state: _PassState,
        condition_ids: set[str],
    ) -> dict[PositionKey, ClosedPosition]:
        """Closed-position summaries for the given markets, fetched once per pass."""
        missing = condition_ids - state.closed_fetched
        if missing:
            closed = await self.source.get_closed_positions(state.whale.wallet_address, missing)
            state.closed_fetched |= missing
            state.closed.update((c.key, c) for c in closed)
        return state.closed

    async def _category(self, trade: Trade) -> Optional[str]:
        if self.categories is None:
            return None
        try:
            return await self.categories.get_market_category(trade.slug)
        except Exception as e:
            log.warning(f"Category lookup failed for {trade.slug!r}: {e}")
            return None

    def _activity(self, whale: Whale, trade: Trade, status: ActivityStatus) -> Activity:
        return Activity(
            whale_id=whale.id,
            transaction_hash=trade.transaction_hash,
            side=Side(trade.side),
            condition_id=trade.condition_id,
            outcome_index=trade.outcome_index,
            size=trade.size,
            price=trade.price,
            usd_value=trade.usd_value,
            trade_ts=trade.timestamp,
            status=status,
            outcome=trade.outcome,
            asset=trade.asset,
            title=trade.title,
            slug=trade.slug,
            event_slug=trade.event_slug,
        )

    async def _process_trade(self, state: _PassState, trade: Trade, index: int) -> None:
        whale, stats = state.whale, state.stats
        key = trade.key
        root = self.activities.find_open_root(whale.id, *key)
        is_last_sell = state.last_sell.get(key) == index
        # a later sell of the same key in this batch means shares were still held
        position_open = key in state.snapshot or state.last_sell.get(key, -1) > index

        result = classify_trade(
            trade, whale, root, position_open,
            max_price_for_storage=self.config.admission.max_price_for_storage,
        )
        if not result.admitted:
            stats.reject(result.reason)
            log.info(
                f"SKIP {result.reason} {trade.side} {trade.size:.2f} @ {trade.price:.3f} "
                f"(${trade.usd_value:,.0f}) by {whale.display_name} on {trade.title or trade.condition_id}"
            )
            return

        activity = self._activity(whale, trade, result.status)
        held_before = 0.0
        if root is not None:
            activity.trade_category = root.trade_category
            held_before = self.pnl.remaining_shares(root)
        else:
            activity.trade_category = await self._category(trade)

        if activity.status.is_sell:
            snap = state.snapshot.get(key)
            current_size = (snap.size if snap is not None else 0.0) if is_last_sell else None
            avg_price = snap.avg_price if snap is not None else None
            if avg_price is None and activity.status == ActivityStatus.CLOSED:
                summary = (await self._closed_summaries(state, {trade.condition_id})).get(key)
                avg_price = summary.avg_price if summary is not None else None

            pnl = self.pnl.realized_for_sale(
                root, trade.size, trade.price, trade.timestamp,
                current_size=current_size, avg_price=avg_price,
            )
            activity.realized_pnl = pnl.realized_pnl
            activity.percent_pnl = pnl.percent_pnl
            activity.pnl_method = pnl.method
            activity.exit_price = trade.price
            if held_before <= EPSILON:
                held_before = (snap.size if snap is not None else 0.0) + trade.size

        try:
            self.activities.insert(activity)
        except sqlite3.IntegrityError as e:
            stats.reject("duplicate")
            log.warning(f"SKIP duplicate {trade.transaction_hash} for {whale.display_name}: {e}")
            return
        stats.admitted += 1
        pnl_note = f" pnl ${activity.realized_pnl:+,.2f}" if activity.realized_pnl is not None else ""
        log.info(
            f"{activity.status.value.upper()} {whale.display_name} {trade.side} {trade.size:.2f} "
            f"@ {trade.price:.3f} (${trade.usd_value:,.0f}) {trade.title or trade.condition_id}{pnl_note}"
        )

        if activity.status == ActivityStatus.OPEN:
            root = activity
        elif activity.status == ActivityStatus.CLOSED:
            self._close_root_after_sale(root, activity)

        if whale.is_copytrade:
            try:
                self.copytrade.on_activity(whale, activity, tracked_whale_shares=held_before)
            except Exception:
                stats.errors += 1
                copy_log.exception(
                    f"Copy-trade failed for {whale.display_name} activity {activity.id} "
                    f"({activity.status.value})"
                )

        await self._notify(whale, activity, root, self._total_after(activity, held_before), stats)

    def _close_root_after_sale(self, root: Activity, sale: Activity) -> None:
        """Close the root on a closing sale, carrying the lifecycle's realized PnL."""
        sells = self.activities.lifecycle_sells(
            root.whale_id, root.condition_id, root.outcome_index, since_ts=root.trade_ts,
        )
        realized = [s.realized_pnl for s in sells if s.realized_pnl is not None]
        total_pnl = sum(realized) if realized else None
        buys = self.activities.lifecycle_buys(
            root.whale_id, root.condition_id, root.outcome_index, since_ts=root.trade_ts,
        )
        cost = sum(b.size * b.price for b in buys)
        percent = percent_of(total_pnl, cost) if total_pnl is not None else None
        if self.activities.close_root(root.id, total_pnl, percent, sale.pnl_method, sale.price):
            root.status = ActivityStatus.CLOSED

    @staticmethod
    def _total_after(activity: Activity, held_before: float) -> float:
        if activity.status == ActivityStatus.OPEN:
            return activity.size
        if activity.status == ActivityStatus.ADDED:
            return held_before + activity.size
        return max(0.0, held_before - activity.size)

    async def _notify(
        self,
        whale: Whale,
        activity: Activity,
        root: Optional[Activity],
        total_shares_after: Optional[float],
        stats: WhalePassStats,
    ) -> None:
        if self.dispatcher is None:
            return
        try:
            if activity.status == ActivityStatus.OPEN:
                if not self.dispatcher.wants(whale, activity.status):
                    return
                if not await self.limiter.try_consume(whale):
                    stats.rate_limited += 1
                    log.info(
                        f"RATE-LIMIT open alert for {whale.display_name} skipped "
                        f"({activity.title or activity.condition_id})"
                    )
                    return
            handle = await self.dispatcher.dispatch(whale, activity, root, total_shares_after)
            if handle:
                stats.notified += 1
        except Exception:
            stats.errors += 1
            log.exception(f"Notification failed for activity {activity.id} ({whale.display_name})")

    async def _detect_closes(self, state: _PassState) -> None:
        whale = state.whale
        # roots traded this pass are re-checked next pass, once the
        # position source has caught up with the new trades
        missing = [
            r for r in self.activities.open_roots(whale.id)
            if r.key not in state.snapshot and r.key not in state.touched
        ]
        if not missing:
            return

        summaries = await self._closed_summaries(state, {r.condition_id for r in missing})
        for root in missing:
            try:
                await self._close_externally(state, root, summaries.get(root.key))
            except Exception:
                state.stats.errors += 1
                log.exception(f"External close failed for root {root.id} ({whale.display_name})")

    async def _close_externally(
        self,
        state: _PassState,
        root: Activity,
        summary: Optional[ClosedPosition],
    ) -> None:
        whale = state.whale
        held = total_shares(self.pnl.remaining_lots(root))
        if summary is None:
            log.warning(
                f"Position {root.condition_id}:{root.outcome_index} of {whale.display_name} "
                f"gone with no closed summary, closing without pnl"
            )
            pnl = PnlResult.undefined()
            exit_price = None
        else:
            exit_price = derived_exit_price(summary.total_bought, summary.avg_price, summary.realized_pnl)
            if exit_price is None:
                exit_price = summary.cur_price
            pnl = self.pnl.realized_for_close(
                root,
                summary.cur_price,
                reported_pnl=summary.realized_pnl,
                reported_basis=summary.total_bought * summary.avg_price,
            )

        if not self.activities.close_root(
            root.id, pnl.realized_pnl, pnl.percent_pnl, pnl.method, exit_price,
        ):
            return
        root.status = ActivityStatus.CLOSED
        if pnl.defined:
            root.realized_pnl = pnl.realized_pnl
            root.percent_pnl = pnl.percent_pnl
            root.pnl_method = pnl.method
        if exit_price is not None:
            root.exit_price = exit_price
        state.stats.closed_external += 1
        exit_note = f"{exit_price:.3f}" if exit_price is not None else "?"
        log.info(
            f"CLOSED (external) {whale.display_name} {root.title or root.condition_id} "
            f"held {held:.2f} exit {exit_note}"
        )

        if whale.is_copytrade:
            if exit_price is None:
                copy_log.warning(
                    f"No exit price for external close of {root.condition_id}:{root.outcome_index} "
                    f"({whale.display_name}), copy positions left open"
                )
            else:
                exit_ts = summary.timestamp if summary and summary.timestamp else int(self.clock())
                try:
                    self.copytrade.close_all(
                        whale, root.condition_id, root.outcome_index, exit_price,
                        exit_ts=exit_ts,
                        realized_outcome=summary.realized_outcome if summary else None,
                    )
                except Exception:
                    state.stats.errors += 1
                    copy_log.exception(
                        f"Copy-trade close failed for {whale.display_name} "
                        f"{root.condition_id}:{root.outcome_index}"
                    )

        await self._notify(whale, root, root, 0.0, state.stats)
