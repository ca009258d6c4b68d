"""Central configuration for the PolySignal whale tracker.

All URLs, thresholds, and intervals live in frozen dataclasses with
environment variable overrides.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

WHALE_CATEGORIES = ("regular", "whale")
SUBSCRIPTION_TIERS = ("free", "paid")
MIN_USD_VALUE_OPTIONS = (0, 100, 250, 500, 1000, 2500, 5000, 10000)


@dataclass(frozen=True)
class DataAPIConfig:
    base_url: str = "https://data-api.polymarket.com"
    timeout: int = 10
    condition_batch_size: int = 50
    positions_limit: int = 500


@dataclass(frozen=True)
class GammaConfig:
    base_url: str = "https://gamma-api.polymarket.com"
    timeout: int = 30


@dataclass(frozen=True)
class DiscordConfig:
    token: str = ""
    api_url: str = "https://discord.com/api/v10"
    timeout: int = 15
    default_channel: str = ""
    free_channel: str = ""
    whale_channel: str = ""
    sports_channel: str = ""
    crypto_channel: str = ""
    politics_channel: str = ""
    economic_channel: str = ""
    gainz_channel: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.token)


@dataclass(frozen=True)
class TrackerConfig:
    poll_interval: float = 8.0
    trades_per_poll: int = 50


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int = 24 * 3600
    free_limit: int = 1
    paid_limit: int = 3


@dataclass(frozen=True)
class AdmissionConfig:
    max_price_for_storage: float = 0.95


@dataclass(frozen=True)
class PnlConfig:
    size_tolerance: float = 50.0


@dataclass(frozen=True)
class CopyTradeConfig:
    default_investment: float = 500.0
    default_partial_close_pct: float = 100.0


@dataclass(frozen=True)
class StatusAlertConfig:
    send_for_open: bool = True
    send_for_added: bool = True
    send_for_partially_closed: bool = True
    send_for_closed: bool = True


@dataclass(frozen=True)
class AlertConfig:
    regular: StatusAlertConfig = field(default_factory=StatusAlertConfig)
    whale: StatusAlertConfig = field(default_factory=StatusAlertConfig)
    gainz_threshold_pct: float = 50.0


@dataclass
class AppConfig:
    data_api: DataAPIConfig = field(default_factory=DataAPIConfig)
    gamma: GammaConfig = field(default_factory=GammaConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    pnl: PnlConfig = field(default_factory=PnlConfig)
    copytrade: CopyTradeConfig = field(default_factory=CopyTradeConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    db_path: Path = Path("data/polysignal.db")
    alert_file: Path = Path("data/alerts.jsonl")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"


def env_bool(name: str, default: bool) -> bool:
    """Parse a boolean environment variable, falling back to ``default``."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


def _status_alerts(category: str) -> StatusAlertConfig:
    prefix = f"DISCORD_ALERT_{category.upper()}"
    return StatusAlertConfig(
        send_for_open=env_bool(f"{prefix}_OPEN", True),
        send_for_added=env_bool(f"{prefix}_ADDED", True),
        send_for_partially_closed=env_bool(f"{prefix}_PARTIALLY_CLOSED", True),
        send_for_closed=env_bool(f"{prefix}_CLOSED", True),
    )


def load_config(env_file: Path | None = None) -> AppConfig:
    """Load configuration from environment variables + defaults.

    Args:
        env_file: Path to .env file. If None, searches project root.
    """
    if env_file and env_file.exists():
        load_dotenv(env_file)
    else:
        for candidate in [Path(".env"), Path(__file__).parent.parent / ".env"]:
            if candidate.exists():
                load_dotenv(candidate)
                break

    env = os.environ.get

    discord = DiscordConfig(
        token=env("DISCORD_BOT_TOKEN", ""),
        default_channel=env("DISCORD_CHANNEL_DEFAULT", ""),
        free_channel=env("DISCORD_CHANNEL_FREE", ""),
        whale_channel=env("DISCORD_CHANNEL_WHALE", ""),
        sports_channel=env("DISCORD_CHANNEL_SPORTS", ""),
        crypto_channel=env("DISCORD_CHANNEL_CRYPTO", ""),
        politics_channel=env("DISCORD_CHANNEL_POLITICS", ""),
        economic_channel=env("DISCORD_CHANNEL_ECONOMIC", ""),
        gainz_channel=env("DISCORD_CHANNEL_GAINZ", ""),
    )

    return AppConfig(
        discord=discord,
        tracker=TrackerConfig(
            poll_interval=float(env("POLL_INTERVAL_SECONDS", "8")),
            trades_per_poll=int(env("TRADES_PER_POLL", "50")),
        ),
        rate_limit=RateLimitConfig(
            window_seconds=int(float(env("FREQUENCY_WINDOW_HOURS", "24")) * 3600),
        ),
        admission=AdmissionConfig(
            max_price_for_storage=float(env("MAX_PRICE_FOR_STORAGE", "0.95")),
        ),
        alerts=AlertConfig(
            regular=_status_alerts("regular"),
            whale=_status_alerts("whale"),
            gainz_threshold_pct=float(env("GAINZ_THRESHOLD_PCT", "50")),
        ),
        db_path=Path(env("DB_PATH", "data/polysignal.db")),
        alert_file=Path(env("ALERT_FILE", "data/alerts.jsonl")),
        log_dir=Path(env("LOG_DIR", "logs")),
        log_level=env("LOG_LEVEL", "INFO"),
    )
