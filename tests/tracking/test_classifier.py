"""Tests for trade classification."""
from __future__ import annotations

from polysignal.tracking.classifier import (
    BELOW_MIN_USD,
    DUPLICATE,
    ORPHAN_SELL,
    PRICE_TOO_HIGH,
    classify_trade,
)
from polysignal.tracking.models import Activity, ActivityStatus, Side, Whale

from tests.fakes import make_trade

WHALE = Whale(id=1, wallet_address="0x1", min_usd_value=500)
ROOT = Activity(
    whale_id=1, transaction_hash="root", side=Side.BUY, condition_id="0xmarket1",
    outcome_index=0, size=1000, price=0.5, usd_value=500, trade_ts=1, status=ActivityStatus.OPEN,
)


def test_initial_buy_opens():
    trade = make_trade("BUY", 1000, 0.50, 10, "t1")
    result = classify_trade(trade, WHALE, None, position_open=True)
    assert result.admitted
    assert result.status == ActivityStatus.OPEN


def test_initial_buy_below_min_usd_rejected():
    trade = make_trade("BUY", 100, 0.50, 10, "t1")
    result = classify_trade(trade, WHALE, None, position_open=True)
    assert not result.admitted
    assert result.reason == BELOW_MIN_USD


def test_initial_buy_price_ceiling():
    trade = make_trade("BUY", 1000, 0.97, 10, "t1")
    assert classify_trade(trade, WHALE, None, True).reason == PRICE_TOO_HIGH
    at_ceiling = make_trade("BUY", 1000, 0.95, 10, "t2")
    assert classify_trade(at_ceiling, WHALE, None, True).status == ActivityStatus.OPEN


def test_top_up_bypasses_filter():
    tiny = make_trade("BUY", 1, 0.99, 10, "t1")
    result = classify_trade(tiny, WHALE, ROOT, position_open=True)
    assert result.status == ActivityStatus.ADDED


def test_sell_without_root_is_orphan():
    trade = make_trade("SELL", 500, 0.7, 10, "t1")
    assert classify_trade(trade, WHALE, None, position_open=False).reason == ORPHAN_SELL


def test_sell_status_follows_position_source():
    trade = make_trade("SELL", 500, 0.7, 10, "t1")
    assert classify_trade(trade, WHALE, ROOT, position_open=True).status == ActivityStatus.PARTIALLY_CLOSED
    assert classify_trade(trade, WHALE, ROOT, position_open=False).status == ActivityStatus.CLOSED


def test_duplicate_short_circuits():
    trade = make_trade("BUY", 1000, 0.5, 10, "t1")
    result = classify_trade(trade, WHALE, ROOT, True, already_stored=True)
    assert result.reason == DUPLICATE
    assert result.status is None


def test_side_is_case_insensitive():
    trade = make_trade("buy", 1000, 0.5, 10, "t1")
    assert trade.side == "BUY"
    assert classify_trade(trade, WHALE, None, True).status == ActivityStatus.OPEN
