"""In-memory stand-ins for the trade source and the alert sink."""
from __future__ import annotations

import asyncio
import itertools
from typing import Optional

from polysignal.clients.models import ClosedPosition, Position, Trade
from polysignal.tracking.alerts import Alert
from polysignal.tracking.models import FrequencyState

CID = "0xmarket1"


def make_trade(
    side: str,
    size: float,
    price: float,
    ts: int,
    tx: str,
    condition_id: str = CID,
    outcome_index: int = 0,
    **extra,
) -> Trade:
    return Trade(
        side=side,
        condition_id=condition_id,
        outcome_index=outcome_index,
        size=size,
        price=price,
        timestamp=ts,
        transaction_hash=tx,
        title=extra.pop("title", "Will it happen?"),
        slug=extra.pop("slug", "will-it-happen"),
        outcome=extra.pop("outcome", "Yes"),
        **extra,
    )


def make_position(size: float, avg_price: float = 0.5, condition_id: str = CID, outcome_index: int = 0) -> Position:
    return Position(condition_id=condition_id, outcome_index=outcome_index, size=size, avg_price=avg_price)


def make_closed(
    total_bought: float,
    avg_price: float,
    realized_pnl: float,
    cur_price: Optional[float] = None,
    condition_id: str = CID,
    outcome_index: int = 0,
) -> ClosedPosition:
    return ClosedPosition(
        condition_id=condition_id,
        outcome_index=outcome_index,
        total_bought=total_bought,
        avg_price=avg_price,
        realized_pnl=realized_pnl,
        cur_price=cur_price,
        outcome="Yes",
        opposite_outcome="No",
    )


class FakeSource:
    """Trade/position source whose answers are set per wallet by the test."""

    def __init__(self):
        self.trades: dict[str, list[Trade]] = {}
        self.positions: dict[str, list[Position]] = {}
        self.closed: dict[str, list[ClosedPosition]] = {}
        self.fail_for: set[str] = set()
        self.calls: list[tuple] = []

    def _check(self, wallet: str) -> None:
        if wallet in self.fail_for:
            raise ConnectionError(f"source down for {wallet}")

    async def get_recent_trades(self, wallet: str, limit: int = 50) -> list[Trade]:
        self.calls.append(("trades", wallet))
        self._check(wallet)
        # newest first, as the feed returns them
        trades = sorted(self.trades.get(wallet, []), key=lambda t: t.timestamp, reverse=True)
        return trades[:limit]

    async def get_positions(self, wallet: str, condition_ids=None) -> list[Position]:
        self.calls.append(("positions", wallet, tuple(sorted(condition_ids or []))))
        self._check(wallet)
        ids = set(condition_ids or [])
        return [p for p in self.positions.get(wallet, []) if not ids or p.condition_id in ids]

    async def get_closed_positions(self, wallet: str, condition_ids=None) -> list[ClosedPosition]:
        self.calls.append(("closed", wallet, tuple(sorted(condition_ids or []))))
        self._check(wallet)
        ids = set(condition_ids or [])
        return [c for c in self.closed.get(wallet, []) if not ids or c.condition_id in ids]


class RecordingSink:
    """Notification sink that records every call and hands out sequential handles."""

    def __init__(self):
        self.sent: list[Alert] = []
        self.updates: list[tuple[str, Alert]] = []
        self.replies: list[tuple[str, Alert]] = []
        self._ids = itertools.count(1)

    async def send(self, alert: Alert) -> Optional[str]:
        self.sent.append(alert)
        return f"msg-{next(self._ids)}"

    async def update(self, handle: str, alert: Alert) -> bool:
        self.updates.append((handle, alert))
        return True

    async def reply(self, handle: str, alert: Alert) -> Optional[str]:
        self.replies.append((handle, alert))
        return f"reply-{next(self._ids)}"


class SlowFrequencyStore:
    """Frequency store that yields to the event loop on every access."""

    def __init__(self, delay: float = 0.001):
        self.delay = delay
        self.rows: dict[int, FrequencyState] = {}
        self.saves = 0

    async def load(self, whale_id: int) -> Optional[FrequencyState]:
        await asyncio.sleep(self.delay)
        return self.rows.get(whale_id)

    async def load_all(self) -> list[FrequencyState]:
        await asyncio.sleep(self.delay)
        return list(self.rows.values())

    async def save(self, state: FrequencyState) -> None:
        await asyncio.sleep(self.delay)
        self.saves += 1
        self.rows[state.whale_id] = state


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
