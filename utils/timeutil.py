"""
utils/timeutil.py
UTC timestamp helpers. All stored timestamps are "%Y-%m-%dT%H:%M:%SZ",
which sorts lexically in time order.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from utils.constants import TS_FORMAT


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: Optional[datetime] = None) -> str:
    return (dt or now_utc()).astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def cutoff_ts(days: int, now: Optional[datetime] = None) -> str:
    """Timestamp ``days`` days before now."""
    return format_ts((now or now_utc()) - timedelta(days=days))


__all__ = ["now_utc", "format_ts", "parse_ts", "cutoff_ts"]
