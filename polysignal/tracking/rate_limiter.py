"""Per-whale notification budget for newly opened positions.

Each whale gets ``limit`` surfaced opens per reset window. The window is
reset lazily on access. ``try_consume`` is serialized per whale by a keyed
asyncio lock, so concurrent callers for the same whale cannot both take the
last unit, while different whales never wait on each other.

State lives in a ``FrequencyCache`` owned by the limiter and is written
through to the store before ``try_consume`` returns, so a restart resumes
with the same budget instead of granting a fresh one.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Dict, Hashable, Iterable, Optional, Protocol

from polysignal.config import RateLimitConfig
from polysignal.db.frequency_repo import FrequencyRepo
from polysignal.tracking.models import FrequencyState, Whale

log = logging.getLogger("tracker")


@dataclass
class _LockEntry:
    lock: asyncio.Lock
    users: int = 0


class KeyedLock:
    """A map of asyncio locks keyed by an arbitrary hashable.

    Waiters on one key are served in arrival order (``asyncio.Lock`` is
    FIFO). An entry is dropped as soon as nobody holds or waits on it.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _LockEntry(asyncio.Lock())
            self._entries[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries


class FrequencyStore(Protocol):
    async def load(self, whale_id: int) -> Optional[FrequencyState]: ...

    async def load_all(self) -> list[FrequencyState]: ...

    async def save(self, state: FrequencyState) -> None: ...


class SqliteFrequencyStore:
    """FrequencyStore backed by the whale_frequency table."""

    def __init__(self, repo: FrequencyRepo):
        self.repo = repo

    async def load(self, whale_id: int) -> Optional[FrequencyState]:
        return self.repo.load(whale_id)

    async def load_all(self) -> list[FrequencyState]:
        return self.repo.load_all()

    async def save(self, state: FrequencyState) -> None:
        self.repo.save(state)


class FrequencyCache:
    """In-memory mirror of the persisted frequency rows. Never the only copy."""

    def __init__(self):
        self._states: Dict[int, FrequencyState] = {}

    def get(self, whale_id: int) -> Optional[FrequencyState]:
        return self._states.get(whale_id)

    def put(self, state: FrequencyState) -> None:
        self._states[state.whale_id] = state

    def replace_all(self, states: Iterable[FrequencyState]) -> None:
        self._states = {s.whale_id: s for s in states}

    def __contains__(self, whale_id: int) -> bool:
        return whale_id in self._states

    def __len__(self) -> int:
        return len(self._states)


class RateLimiter:
    def __init__(
        self,
        store: FrequencyStore,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.clock = clock
        self.cache = FrequencyCache()
        self._locks = KeyedLock()

    def limit_for(self, whale: Whale) -> int:
        return whale.notification_limit(self.config.free_limit, self.config.paid_limit)

    async def load(self) -> int:
        """Warm the cache from the store. Returns the number of rows loaded."""
        states = await self.store.load_all()
        self.cache.replace_all(states)
        log.info(f"Rate limiter loaded {len(states)} frequency rows")
        return len(states)

    async def _current(self, whale_id: int) -> Optional[FrequencyState]:
        state = self.cache.get(whale_id)
        if state is None:
            state = await self.store.load(whale_id)
            if state is not None:
                self.cache.put(state)
        return state

    async def _write(self, state: FrequencyState) -> None:
        await self.store.save(state)
        self.cache.put(state)

    def _fresh(self, whale: Whale, now: float) -> FrequencyState:
        return FrequencyState(
            whale_id=whale.id,
            remaining=self.limit_for(whale),
            reset_at=now + self.config.window_seconds,
        )

    async def try_consume(self, whale: Whale) -> bool:
        """Take one unit of the whale's budget. False when exhausted."""
        async with self._locks.hold(whale.id):
            now = self.clock()
            limit = self.limit_for(whale)
            state = await self._current(whale.id)

            if state is None or now >= state.reset_at:
                state = self._fresh(whale, now)
            elif state.remaining > limit:
                # limit lowered since the window started
                state = replace(state, remaining=limit)

            if state.remaining <= 0:
                if self.cache.get(whale.id) != state:
                    await self._write(state)
                return False

            await self._write(replace(state, remaining=state.remaining - 1))
            return True

    async def remaining(self, whale: Whale) -> int:
        """Budget left right now, without consuming it."""
        async with self._locks.hold(whale.id):
            state = await self._current(whale.id)
            if state is None or self.clock() >= state.reset_at:
                return self.limit_for(whale)
            return min(state.remaining, self.limit_for(whale))

    async def sweep(self, whales: Iterable[Whale], now: float | None = None) -> int:
        """Reset every expired window ahead of access. Returns resets made."""
        now = self.clock() if now is None else now
        resets = 0
        for whale in whales:
            async with self._locks.hold(whale.id):
                state = await self._current(whale.id)
                if state is not None and now < state.reset_at:
                    continue
                await self._write(self._fresh(whale, now))
                resets += 1
        if resets:
            log.debug(f"Rate limiter sweep reset {resets} window(s)")
        return resets
