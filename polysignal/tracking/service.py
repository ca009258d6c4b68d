"""Tracker process: wires the clients, repos and engines and drives passes.

A fixed-interval timer starts a reconciliation pass on every tick. If the
previous pass is still running the tick is skipped, not queued. On SIGINT
or SIGTERM the timer stops and any pass in flight is allowed to finish.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sqlite3
import time
from typing import Callable, Optional

from polysignal.clients.data_api import DataAPIClient
from polysignal.clients.discord import DiscordNotifier
from polysignal.clients.gamma import GammaClient
from polysignal.config import AppConfig
from polysignal.db.activity_repo import ActivityRepo
from polysignal.db.connection import get_connection
from polysignal.db.copytrade_repo import CopyTradeRepo
from polysignal.db.frequency_repo import FrequencyRepo
from polysignal.db.whale_repo import WhaleRepo
from polysignal.tracking.alerts import AlertDispatcher, JsonlAlertSink, NotificationSink
from polysignal.tracking.copytrade import CopyTradeEngine
from polysignal.tracking.fifo import PnlEngine
from polysignal.tracking.rate_limiter import RateLimiter, SqliteFrequencyStore
from polysignal.tracking.reconciler import CategorySource, Reconciler, TradeSource, WhalePassStats

log = logging.getLogger("tracker")


def build_sink(config: AppConfig) -> NotificationSink:
    if config.discord.enabled:
        log.info("Alerts go to Discord")
        return DiscordNotifier(config.discord)
    log.info(f"Discord not configured, alerts go to {config.alert_file}")
    return JsonlAlertSink(config.alert_file)


class TrackerService:
    def __init__(
        self,
        config: AppConfig,
        conn: Optional[sqlite3.Connection] = None,
        source: Optional[TradeSource] = None,
        sink: Optional[NotificationSink] = None,
        categories: Optional[CategorySource] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.conn = conn or get_connection(config.db_path)
        self.source = source or DataAPIClient(config.data_api)
        self.sink = sink or build_sink(config)
        self.categories = categories if categories is not None else GammaClient(config.gamma)

        self.whales = WhaleRepo(self.conn)
        self.activities = ActivityRepo(self.conn)
        self.positions = CopyTradeRepo(self.conn)
        self.limiter = RateLimiter(
            SqliteFrequencyStore(FrequencyRepo(self.conn)), config.rate_limit, clock=clock,
        )
        self.reconciler = Reconciler(
            config,
            self.source,
            self.whales,
            self.activities,
            self.limiter,
            PnlEngine(self.activities, config.pnl),
            CopyTradeEngine(self.positions, config.copytrade),
            dispatcher=AlertDispatcher(self.sink, self.activities, config.alerts),
            categories=self.categories,
            clock=clock,
        )

        self._started = False
        self._pass_running = False
        self._passes: set[asyncio.Task] = set()
        self.passes_started = 0
        self.ticks_skipped = 0

    @property
    def pass_running(self) -> bool:
        return self._pass_running

    async def start(self) -> None:
        """Load limiter state and reset windows that expired while down."""
        if self._started:
            return
        await self.limiter.load()
        await self.limiter.sweep(self.whales.list_active())
        self._started = True

    async def run_pass(self) -> Optional[dict[int, WhalePassStats | BaseException]]:
        """One reconciliation pass. Returns None if a pass was already running."""
        if self._pass_running:
            self.ticks_skipped += 1
            log.warning("SKIP tick: previous pass still running")
            return None
        self._pass_running = True
        self.passes_started += 1
        t0 = time.monotonic()
        try:
            await self.start()
            return await self.reconciler.poll_all()
        finally:
            self._pass_running = False
            log.debug(f"Pass {self.passes_started} took {time.monotonic() - t0:.1f}s")

    def _tick(self) -> None:
        if self._pass_running:
            self.ticks_skipped += 1
            log.warning("SKIP tick: previous pass still running")
            return
        task = asyncio.create_task(self.run_pass())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick every ``poll_interval`` seconds until a shutdown signal."""
        log.info("=" * 60)
        log.info("PolySignal whale tracker starting")
        log.info("=" * 60)
        await self.start()
        log.info(
            f"Tracking {len(self.whales.list_active())} whale(s), "
            f"poll every {self.config.tracker.poll_interval:.0f}s"
        )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            log.info("Shutdown signal received...")
            stop.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except (NotImplementedError, RuntimeError):
                # not supported on this platform or outside the main thread
                pass

        ticks = 0
        try:
            while not stop.is_set():
                self._tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.config.tracker.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._passes:
                log.info("Waiting for the running pass to finish...")
                await asyncio.gather(*self._passes, return_exceptions=True)
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            await self.close()
        log.info("Tracker stopped")

    async def close(self) -> None:
        for client in (self.source, self.sink, self.categories):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                log.warning(f"Closing {type(client).__name__} failed: {e}")
