"""Timestamp helpers shared by repositories and alerts."""
from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ts_to_iso(ts: float | int | None) -> str | None:
    """Unix seconds -> ISO 8601 UTC string (None passes through)."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_ts(ts: float | int) -> int:
    """Return unix seconds, accepting millisecond timestamps as well.

    The Data API reports seconds, but some payloads carry milliseconds.
    """
    value = int(ts)
    if value > 10_000_000_000:
        value //= 1000
    return value
