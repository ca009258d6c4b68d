"""End-to-end reconciliation passes against in-memory sources."""
from __future__ import annotations

import pytest

from polysignal.config import AppConfig
from polysignal.tracking.alerts import KIND_GAINZ, AlertDispatcher
from polysignal.tracking.classifier import BELOW_MIN_USD, ORPHAN_SELL
from polysignal.tracking.copytrade import CopyTradeEngine
from polysignal.tracking.fifo import METHOD_FIFO, PnlEngine
from polysignal.tracking.models import ActivityStatus, PositionStatus
from polysignal.tracking.rate_limiter import RateLimiter
from polysignal.tracking.reconciler import Reconciler, order_for_processing

from tests.fakes import (
    CID,
    FakeClock,
    FakeSource,
    RecordingSink,
    SlowFrequencyStore,
    make_closed,
    make_position,
    make_trade,
)


class StaticCategories:
    def __init__(self, category="sports"):
        self.category = category
        self.calls = 0

    async def get_market_category(self, slug):
        self.calls += 1
        return self.category


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def reconciler(source, sink, whale_repo, activity_repo, copytrade_repo):
    clock = FakeClock()
    return Reconciler(
        AppConfig(),
        source,
        whale_repo,
        activity_repo,
        RateLimiter(SlowFrequencyStore(), clock=clock),
        PnlEngine(activity_repo),
        CopyTradeEngine(copytrade_repo),
        dispatcher=AlertDispatcher(sink, activity_repo),
        clock=clock,
    )


def _statuses(activity_repo, whale):
    rows = sorted(activity_repo.list_for_whale(whale.id), key=lambda a: (a.trade_ts, a.id))
    return [a.status for a in rows]


def test_order_for_processing_dedupes_and_sorts():
    newest_first = [
        make_trade("SELL", 10, 0.5, 300, "c"),
        make_trade("BUY", 10, 0.5, 200, "b2"),
        make_trade("BUY", 10, 0.5, 200, "b1"),
        make_trade("BUY", 10, 0.5, 100, "a"),
        make_trade("BUY", 10, 0.5, 100, "a"),
    ]
    ordered = order_for_processing(newest_first, known={"c"})
    assert [t.transaction_hash for t in ordered] == ["a", "b1", "b2"]


@pytest.mark.asyncio
async def test_full_lifecycle_in_one_pass(reconciler, source, sink, whale, activity_repo, copytrade_repo):
    source.trades[whale.wallet_address] = [
        make_trade("BUY", 1000, 0.50, 100, "b1"),
        make_trade("BUY", 500, 0.55, 200, "b2"),
        make_trade("SELL", 750, 0.70, 300, "s1"),
        make_trade("SELL", 750, 0.65, 400, "s2"),
    ]

    stats = await reconciler.process_whale(whale)

    assert stats.admitted == 4
    assert _statuses(activity_repo, whale) == [
        ActivityStatus.OPEN, ActivityStatus.ADDED,
        ActivityStatus.PARTIALLY_CLOSED, ActivityStatus.CLOSED,
    ]
    by_tx = {a.transaction_hash: a for a in activity_repo.list_for_whale(whale.id)}
    assert by_tx["s1"].realized_pnl == pytest.approx(150.0)
    assert by_tx["s2"].realized_pnl == pytest.approx(87.5)
    assert by_tx["s2"].pnl_method == METHOD_FIFO

    root = by_tx["b1"]
    assert root.status == ActivityStatus.CLOSED
    assert root.realized_pnl == pytest.approx(237.5)
    assert activity_repo.open_roots(whale.id) == []

    [pos] = copytrade_repo.list_for_whale(whale.id)
    assert pos.status == PositionStatus.CLOSED
    assert pos.realized_pnl == pytest.approx(500 * 0.20 + 500 * 0.15)

    # one fresh open alert, then updates and replies on its thread
    assert len(sink.sent) == 1
    assert [h for h, _ in sink.replies] == ["msg-1"] * 3


@pytest.mark.asyncio
async def test_lifecycle_across_passes(reconciler, source, whale, activity_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [
        make_trade("BUY", 1000, 0.50, 100, "b1"),
        make_trade("BUY", 500, 0.55, 200, "b2"),
    ]
    source.positions[wallet] = [make_position(1500, 0.5167)]
    await reconciler.process_whale(whale)

    source.trades[wallet].append(make_trade("SELL", 750, 0.70, 300, "s1"))
    source.positions[wallet] = [make_position(750, 0.5167)]
    await reconciler.process_whale(whale)

    source.trades[wallet].append(make_trade("SELL", 750, 0.65, 400, "s2"))
    source.positions[wallet] = []
    await reconciler.process_whale(whale)

    by_tx = {a.transaction_hash: a for a in activity_repo.list_for_whale(whale.id)}
    assert by_tx["s1"].status == ActivityStatus.PARTIALLY_CLOSED
    assert by_tx["s1"].realized_pnl == pytest.approx(150.0)
    assert by_tx["s2"].status == ActivityStatus.CLOSED
    assert by_tx["s2"].realized_pnl == pytest.approx(87.5)
    assert by_tx["b1"].status == ActivityStatus.CLOSED


@pytest.mark.asyncio
async def test_repeated_pass_is_idempotent(reconciler, source, whale, activity_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [make_trade("BUY", 1000, 0.5, 100, "b1")]
    source.positions[wallet] = [make_position(1000)]

    first = await reconciler.process_whale(whale)
    second = await reconciler.process_whale(whale)

    assert first.admitted == 1
    assert second.new == 0 and second.admitted == 0
    assert len(activity_repo.list_for_whale(whale.id)) == 1


@pytest.mark.asyncio
async def test_single_open_root_per_key(reconciler, source, whale, activity_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [
        make_trade("BUY", 1000, 0.5, 100, "b1"),
        make_trade("BUY", 2000, 0.5, 110, "b2"),
        make_trade("BUY", 1000, 0.5, 100, "x1", condition_id="0xmarket2"),
    ]
    source.positions[wallet] = [make_position(3000), make_position(1000, condition_id="0xmarket2")]

    await reconciler.process_whale(whale)

    roots = activity_repo.open_roots(whale.id)
    assert sorted(r.transaction_hash for r in roots) == ["b1", "x1"]
    assert activity_repo.count_by_status(whale.id) == {"open": 2, "added": 1}


@pytest.mark.asyncio
async def test_rejections_are_counted(reconciler, source, whale, activity_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [
        make_trade("SELL", 500, 0.7, 100, "s0"),
        make_trade("BUY", 100, 0.5, 110, "tiny"),
    ]

    stats = await reconciler.process_whale(whale)

    assert stats.rejected == {ORPHAN_SELL: 1, BELOW_MIN_USD: 1}
    assert activity_repo.list_for_whale(whale.id) == []


@pytest.mark.asyncio
async def test_external_close_prices_from_summary(reconciler, source, sink, whale, activity_repo, copytrade_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [make_trade("BUY", 1000, 0.5, 100, "b1")]
    source.positions[wallet] = [make_position(1000)]
    await reconciler.process_whale(whale)

    # market resolved in the whale's favour, no sell in the feed
    source.positions[wallet] = []
    source.closed[wallet] = [make_closed(1000, 0.5, 500.0, cur_price=1.0)]
    stats = await reconciler.process_whale(whale)

    assert stats.closed_external == 1
    [root] = activity_repo.list_for_whale(whale.id)
    assert root.status == ActivityStatus.CLOSED
    assert root.exit_price == pytest.approx(1.0)
    assert root.realized_pnl == pytest.approx(500.0)
    assert root.percent_pnl == pytest.approx(100.0)

    [pos] = copytrade_repo.list_for_whale(whale.id)
    assert pos.status == PositionStatus.CLOSED
    assert pos.realized_pnl == pytest.approx(500.0)
    assert pos.realized_outcome == "Yes"

    assert [h for h, _ in sink.updates] == ["msg-1"]
    assert [a.kind for a in sink.sent][-1] == KIND_GAINZ


@pytest.mark.asyncio
async def test_external_close_without_summary(reconciler, source, whale, activity_repo, copytrade_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [make_trade("BUY", 1000, 0.5, 100, "b1")]
    source.positions[wallet] = [make_position(1000)]
    await reconciler.process_whale(whale)

    source.positions[wallet] = []
    await reconciler.process_whale(whale)

    [root] = activity_repo.list_for_whale(whale.id)
    assert root.status == ActivityStatus.CLOSED
    assert root.realized_pnl is None
    [pos] = copytrade_repo.list_for_whale(whale.id)
    assert pos.status == PositionStatus.OPEN


@pytest.mark.asyncio
async def test_external_close_after_partial_sell_keeps_lifecycle_pnl(
    reconciler, source, whale, activity_repo, copytrade_repo,
):
    wallet = whale.wallet_address
    source.trades[wallet] = [make_trade("BUY", 1000, 0.50, 100, "b1")]
    source.positions[wallet] = [make_position(1000)]
    await reconciler.process_whale(whale)

    source.trades[wallet].append(make_trade("SELL", 600, 0.70, 200, "s1"))
    source.positions[wallet] = [make_position(400)]
    await reconciler.process_whale(whale)

    # the remaining 400 shares resolve at 1.0 without a sell in the feed
    source.positions[wallet] = []
    source.closed[wallet] = [make_closed(1000, 0.5, 320.0, cur_price=1.0)]
    stats = await reconciler.process_whale(whale)

    by_tx = {a.transaction_hash: a for a in activity_repo.list_for_whale(whale.id)}
    assert stats.closed_external == 1
    assert by_tx["s1"].realized_pnl == pytest.approx(120.0)
    root = by_tx["b1"]
    assert root.status == ActivityStatus.CLOSED
    assert root.realized_pnl == pytest.approx(320.0)
    assert root.percent_pnl == pytest.approx(64.0)
    assert root.pnl_method == METHOD_FIFO
    assert root.exit_price == pytest.approx(0.82)

    [pos] = copytrade_repo.list_for_whale(whale.id)
    assert pos.status == PositionStatus.CLOSED
    assert pos.realized_pnl == pytest.approx(600 * 0.20 + 400 * 0.32)


@pytest.mark.asyncio
async def test_root_traded_this_pass_not_closed_externally(reconciler, source, whale, activity_repo):
    # the position source lags behind the trade feed
    source.trades[whale.wallet_address] = [make_trade("BUY", 1000, 0.5, 100, "b1")]

    stats = await reconciler.process_whale(whale)

    assert stats.closed_external == 0
    assert len(activity_repo.open_roots(whale.id)) == 1


@pytest.mark.asyncio
async def test_closing_sell_uses_average_price_when_ledger_is_short(reconciler, source, whale, activity_repo):
    wallet = whale.wallet_address
    source.trades[wallet] = [make_trade("BUY", 1000, 0.5, 100, "b1")]
    source.positions[wallet] = [make_position(1000)]
    await reconciler.process_whale(whale)

    # the whale sells 2000 shares more than the ledger ever saw bought
    source.trades[wallet].append(make_trade("SELL", 3000, 0.7, 200, "s1"))
    source.positions[wallet] = []
    source.closed[wallet] = [make_closed(3000, 0.4, 900.0, cur_price=0.7)]
    await reconciler.process_whale(whale)

    sale = next(a for a in activity_repo.list_for_whale(whale.id) if a.transaction_hash == "s1")
    assert sale.status == ActivityStatus.CLOSED
    assert sale.pnl_method == "avg_price"
    assert sale.realized_pnl == pytest.approx(3000 * (0.7 - 0.4))


@pytest.mark.asyncio
async def test_paid_whale_open_alerts_are_rate_limited(reconciler, source, sink, whale):
    wallet = whale.wallet_address
    markets = [f"0xm{i}" for i in range(4)]
    source.trades[wallet] = [
        make_trade("BUY", 1000, 0.5, 100 + i, f"b{i}", condition_id=cid)
        for i, cid in enumerate(markets)
    ]
    source.positions[wallet] = [make_position(1000, condition_id=cid) for cid in markets]

    stats = await reconciler.process_whale(whale)

    assert stats.admitted == 4
    assert stats.notified == 3
    assert stats.rate_limited == 1
    assert len(sink.sent) == 3


@pytest.mark.asyncio
async def test_top_ups_inherit_root_category(reconciler, source, whale, activity_repo):
    categories = StaticCategories("sports")
    reconciler.categories = categories
    wallet = whale.wallet_address
    source.trades[wallet] = [
        make_trade("BUY", 1000, 0.5, 100, "b1"),
        make_trade("BUY", 10, 0.5, 200, "b2"),
    ]
    source.positions[wallet] = [make_position(1010)]

    await reconciler.process_whale(whale)

    assert categories.calls == 1
    assert {a.trade_category for a in activity_repo.list_for_whale(whale.id)} == {"sports"}


@pytest.mark.asyncio
async def test_one_failing_whale_does_not_block_others(reconciler, source, whale, whale_repo, activity_repo):
    other = whale_repo.add("0xother", subscription_type="paid")
    source.fail_for.add(whale.wallet_address)
    source.trades[other.wallet_address] = [make_trade("BUY", 1000, 0.5, 100, "o1")]
    source.positions[other.wallet_address] = [make_position(1000)]

    results = await reconciler.poll_all()

    assert isinstance(results[whale.id], ConnectionError)
    assert results[other.id].admitted == 1
    assert [a.transaction_hash for a in activity_repo.list_for_whale(other.id)] == ["o1"]


@pytest.mark.asyncio
async def test_positions_skipped_without_markets(reconciler, source, whale):
    await reconciler.process_whale(whale)
    assert source.calls == [("trades", whale.wallet_address)]


@pytest.mark.asyncio
async def test_positions_filtered_to_touched_markets(reconciler, source, whale):
    source.trades[whale.wallet_address] = [make_trade("BUY", 1000, 0.5, 100, "b1")]
    source.positions[whale.wallet_address] = [make_position(1000)]
    await reconciler.process_whale(whale)
    assert ("positions", whale.wallet_address, (CID,)) in source.calls


class BrokenSink(RecordingSink):
    async def send(self, alert):
        raise OSError("discord unreachable")


class BrokenCopyTrade:
    def __init__(self):
        self.calls = 0

    def on_activity(self, whale, activity, tracked_whale_shares=None):
        self.calls += 1
        raise RuntimeError("copy ledger locked")


@pytest.mark.asyncio
async def test_copytrade_and_alert_failures_do_not_stop_the_pass(
    source, whale, whale_repo, activity_repo,
):
    clock = FakeClock()
    copytrade = BrokenCopyTrade()
    reconciler = Reconciler(
        AppConfig(),
        source,
        whale_repo,
        activity_repo,
        RateLimiter(SlowFrequencyStore(), clock=clock),
        PnlEngine(activity_repo),
        copytrade,
        dispatcher=AlertDispatcher(BrokenSink(), activity_repo),
        clock=clock,
    )
    other = whale_repo.add("0xother", subscription_type="paid")
    source.trades[whale.wallet_address] = [
        make_trade("BUY", 1000, 0.5, 100, "b1"),
        make_trade("BUY", 500, 0.5, 110, "b2"),
        make_trade("BUY", 1000, 0.5, 120, "x1", condition_id="0xmarket2"),
    ]
    source.positions[whale.wallet_address] = [
        make_position(1500), make_position(1000, condition_id="0xmarket2"),
    ]
    source.trades[other.wallet_address] = [make_trade("BUY", 1000, 0.5, 100, "o1")]
    source.positions[other.wallet_address] = [make_position(1000)]

    results = await reconciler.poll_all()

    stats = results[whale.id]
    assert stats.admitted == 3
    assert copytrade.calls == 3
    # one copy-trade and one alert failure per admitted trade
    assert stats.errors == 6
    assert stats.notified == 0
    assert _statuses(activity_repo, whale) == [
        ActivityStatus.OPEN, ActivityStatus.ADDED, ActivityStatus.OPEN,
    ]

    assert results[other.id].admitted == 1
    assert [a.transaction_hash for a in activity_repo.list_for_whale(other.id)] == ["o1"]
