"""
Utility functions for live trading.

Includes:
- UTC timestamp handling (SQLite hands back naive datetimes)
- Market end date parsing and time-remaining helpers
- Display formatting
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes, convert aware ones to UTC.

    Args:
        value: Datetime or None

    Returns:
        Aware UTC datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_end_date(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a market end date ("2025-01-15T17:15:00Z" or a datetime).

    Returns:
        Aware UTC datetime, or None if missing/unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Unparseable end date: {value!r}")
        return None


def seconds_until(end: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds from now until end (negative once passed, -inf if unknown)."""
    if end is None:
        return float("-inf")
    now = ensure_utc(now) if now else utc_now()
    return (ensure_utc(end) - now).total_seconds()


def format_time_remaining(seconds: float) -> str:
    """
    Format seconds as a short countdown.

    Examples:
        format_time_remaining(125) -> "2m 5s"
        format_time_remaining(45) -> "45s"
        format_time_remaining(-3) -> "ENDED"
    """
    if seconds <= 0:
        return "ENDED"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_price(price: Optional[float]) -> str:
    """Format a 0-1 price as cents: 0.955 -> "95.5c"."""
    if price is None:
        return "-"
    return f"{price * 100:.1f}c"
