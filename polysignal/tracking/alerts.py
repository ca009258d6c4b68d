"""Trade alerts: formatting, channel routing, and lifecycle threading.

An ``open`` alert starts a thread; later statuses of the same position edit
the root message and reply under it. Closed positions above the gainz
threshold also get a celebratory alert on their own channel.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from polysignal.config import AlertConfig, DiscordConfig, StatusAlertConfig
from polysignal.db.activity_repo import ActivityRepo
from polysignal.shared.time_utils import ts_to_iso
from polysignal.tracking.models import Activity, ActivityStatus, Whale

log = logging.getLogger("notify")

KIND_TRADE = "trade"
KIND_GAINZ = "gainz"

PROFILE_URL = "https://polymarket.com/profile/{wallet}"
EVENT_URL = "https://polymarket.com/event/{slug}"

COLOR_BLUE = 0x0099FF
COLOR_GREEN = 0x22C55E
COLOR_ORANGE = 0xFF8C00
COLOR_RED = 0xEF4444
COLOR_GOLD = 0xFFD700


@dataclass
class Alert:
    kind: str
    wallet: str
    trader_name: Optional[str]
    status: ActivityStatus
    side: str
    title: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None
    outcome: Optional[str] = None
    shares: Optional[float] = None
    total_shares: Optional[float] = None
    price: Optional[float] = None
    usd_value: Optional[float] = None
    realized_pnl: Optional[float] = None
    percent_pnl: Optional[float] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    whale_category: str = "regular"
    trade_category: Optional[str] = None
    subscription_type: str = "free"
    timestamp: Optional[int] = None
    transaction_hash: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        record["timestamp"] = ts_to_iso(self.timestamp)
        return record


def alert_from_activity(
    whale: Whale,
    activity: Activity,
    total_shares: Optional[float] = None,
    entry_price: Optional[float] = None,
) -> Alert:
    return Alert(
        kind=KIND_TRADE,
        wallet=whale.wallet_address,
        trader_name=whale.label,
        status=activity.status,
        side=activity.side.value,
        title=activity.title,
        slug=activity.slug,
        event_slug=activity.event_slug,
        outcome=activity.outcome,
        shares=activity.size,
        total_shares=total_shares,
        price=activity.price,
        usd_value=activity.usd_value,
        realized_pnl=activity.realized_pnl,
        percent_pnl=activity.percent_pnl,
        entry_price=entry_price,
        exit_price=activity.exit_price,
        whale_category=whale.category,
        trade_category=activity.trade_category,
        subscription_type=whale.subscription_type,
        timestamp=activity.trade_ts,
        transaction_hash=activity.transaction_hash,
    )


def status_toggles(config: AlertConfig, whale_category: str) -> StatusAlertConfig:
    return config.whale if whale_category == "whale" else config.regular


def should_send_for_status(
    config: AlertConfig,
    whale_category: str,
    status: ActivityStatus,
) -> bool:
    toggles = status_toggles(config, whale_category)
    if status == ActivityStatus.OPEN:
        return toggles.send_for_open
    if status == ActivityStatus.ADDED:
        return toggles.send_for_added
    if status == ActivityStatus.PARTIALLY_CLOSED:
        return toggles.send_for_partially_closed
    if status == ActivityStatus.CLOSED:
        return toggles.send_for_closed
    raise ValueError(f"unhandled activity status {status!r}")


def is_gainz(config: AlertConfig, status: ActivityStatus, percent_pnl: Optional[float]) -> bool:
    return (
        status == ActivityStatus.CLOSED
        and percent_pnl is not None
        and percent_pnl >= config.gainz_threshold_pct
    )


def route_channels(config: DiscordConfig, alert: Alert) -> list[str]:
    """Channel ids for an alert.

    Priority: gainz channel for gainz alerts, then the free channel for free
    subscriptions, the whale channel for whales, the trade-category channel,
    and finally the default channel.
    """
    if alert.kind == KIND_GAINZ:
        return [config.gainz_channel] if config.gainz_channel else []

    if alert.subscription_type == "free" and config.free_channel:
        return [config.free_channel]

    if alert.whale_category == "whale":
        channel = config.whale_channel or config.default_channel
        return [channel] if channel else []

    by_category = {
        "sports": config.sports_channel,
        "crypto": config.crypto_channel,
        "politics": config.politics_channel,
        "economic": config.economic_channel,
    }
    channel = by_category.get((alert.trade_category or "").lower())
    if channel:
        return [channel]
    return [config.default_channel] if config.default_channel else []


def _fmt_pct(pct: Optional[float]) -> str:
    return f" ({pct:+.2f}%)" if pct is not None else ""


def build_title(alert: Alert) -> str:
    if alert.kind == KIND_GAINZ:
        return f"GAINZ{_fmt_pct(alert.percent_pnl)}"

    is_whale = alert.whale_category == "whale"
    subject = "Whale" if is_whale else (alert.trade_category or "trade").capitalize()
    prefix = "🐋 " if is_whale else ""
    if alert.status == ActivityStatus.OPEN:
        return f"{prefix}Opening {subject} Position"
    if alert.status == ActivityStatus.CLOSED:
        return f"{prefix}Closing {subject} Position{_fmt_pct(alert.percent_pnl)}"
    label = alert.status.value.upper().replace("_", " ")
    pct = _fmt_pct(alert.percent_pnl) if alert.status == ActivityStatus.PARTIALLY_CLOSED else ""
    return f"{prefix}{subject} Position {label}{pct}"


def embed_color(alert: Alert) -> int:
    if alert.kind == KIND_GAINZ:
        return COLOR_GOLD
    if alert.status == ActivityStatus.OPEN:
        return COLOR_GREEN
    if alert.status == ActivityStatus.ADDED:
        return COLOR_BLUE
    if alert.status == ActivityStatus.PARTIALLY_CLOSED:
        return COLOR_ORANGE
    if alert.percent_pnl is not None and alert.percent_pnl >= 0:
        return COLOR_GREEN
    return COLOR_RED


def build_embed(alert: Alert) -> dict[str, Any]:
    """Discord embed payload for an alert."""
    fields = []

    def add(name: str, value: Optional[str], inline: bool = True) -> None:
        if value:
            fields.append({"name": name, "value": value, "inline": inline})

    if alert.title:
        link = EVENT_URL.format(slug=alert.event_slug) if alert.event_slug else None
        add("Market", f"[{alert.title}]({link})" if link else alert.title, inline=False)
    if alert.whale_category != "regular":
        name = alert.trader_name or alert.wallet
        add("Trader", f"[{name}]({PROFILE_URL.format(wallet=alert.wallet)})", inline=False)
    add("Type", alert.side)
    if alert.shares is not None:
        shares = f"{alert.shares:,.2f}"
        if alert.total_shares is not None:
            shares += f" / {alert.total_shares:,.2f}"
        add("Shares", shares)
    if alert.usd_value is not None:
        add("Value", f"${alert.usd_value:,.2f}")
    if alert.status == ActivityStatus.CLOSED and alert.exit_price is not None:
        if alert.entry_price is not None:
            add("Entry Price", f"{alert.entry_price:.3f}")
        add("Exit Price", f"{alert.exit_price:.3f}")
    elif alert.price is not None:
        add("Price", f"{alert.price:.3f}")
    add("Outcome", alert.outcome)
    add("Status", alert.status.value.replace("_", " ").title())
    if alert.realized_pnl is not None:
        add("Realized PnL", f"${alert.realized_pnl:+,.2f}{_fmt_pct(alert.percent_pnl)}")

    embed: dict[str, Any] = {
        "title": build_title(alert),
        "color": embed_color(alert),
        "fields": fields,
    }
    if alert.timestamp is not None:
        embed["timestamp"] = ts_to_iso(alert.timestamp)
    if alert.transaction_hash:
        embed["footer"] = {"text": alert.transaction_hash}
    return embed


class NotificationSink(Protocol):
    async def send(self, alert: Alert) -> Optional[str]: ...

    async def update(self, handle: str, alert: Alert) -> bool: ...

    async def reply(self, handle: str, alert: Alert) -> Optional[str]: ...


class JsonlAlertSink:
    """Appends alerts to a JSON-lines file. Handles are generated ids."""

    def __init__(self, alert_file: Path):
        self.alert_file = alert_file

    def _write(self, action: str, handle: str, alert: Alert, parent: Optional[str] = None) -> bool:
        self.alert_file.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "written_at": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "handle": handle,
            "parent": parent,
            **alert.to_record(),
        }
        try:
            with open(self.alert_file, "a") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            log.error(f"Alert file write failed: {e}")
            return False
        return True

    async def send(self, alert: Alert) -> Optional[str]:
        handle = uuid.uuid4().hex
        return handle if self._write("send", handle, alert) else None

    async def update(self, handle: str, alert: Alert) -> bool:
        return self._write("update", handle, alert)

    async def reply(self, handle: str, alert: Alert) -> Optional[str]:
        reply_handle = uuid.uuid4().hex
        return reply_handle if self._write("reply", reply_handle, alert, parent=handle) else None


class AlertDispatcher:
    """Sends activity alerts and stores the returned handles on the ledger."""

    def __init__(
        self,
        sink: NotificationSink,
        activities: ActivityRepo,
        config: AlertConfig | None = None,
    ):
        self.sink = sink
        self.activities = activities
        self.config = config or AlertConfig()

    def wants(self, whale: Whale, status: ActivityStatus) -> bool:
        return should_send_for_status(self.config, whale.category, status)

    async def dispatch(
        self,
        whale: Whale,
        activity: Activity,
        root: Optional[Activity] = None,
        total_shares: Optional[float] = None,
    ) -> Optional[str]:
        """Notify one status change. Returns the handle stored, if any.

        ``root`` is the open root the activity belongs to (the activity
        itself for an ``open`` or an externally closed root).
        """
        if not self.wants(whale, activity.status):
            log.info(
                f"SKIP alert {activity.status.value} for {whale.display_name}: "
                f"disabled for {whale.category} whales"
            )
            return None

        alert = alert_from_activity(
            whale, activity, total_shares,
            entry_price=root.price if root is not None else None,
        )
        root_handle = root.notification_handle if root is not None else None
        is_root = root is not None and root.id == activity.id

        if activity.status == ActivityStatus.OPEN or not root_handle:
            handle = await self.sink.send(alert)
        else:
            if not await self.sink.update(root_handle, alert):
                log.warning(f"Could not update root alert {root_handle}")
            handle = await self.sink.reply(root_handle, alert)

        if handle and activity.id is not None and not (is_root and root_handle):
            self.activities.set_notification_handle(activity.id, handle)
            activity.notification_handle = handle

        if is_gainz(self.config, activity.status, activity.percent_pnl):
            gainz = alert_from_activity(
                whale, activity, total_shares,
                entry_price=root.price if root is not None else None,
            )
            gainz.kind = KIND_GAINZ
            await self.sink.send(gainz)
            log.info(f"GAINZ {whale.display_name} {activity.percent_pnl:+.1f}% on {activity.title}")

        return handle
