from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC (the database stores naive UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def business_tz(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def parse_timestamp(raw: object) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds/milliseconds into an aware UTC datetime.

    Returns None for anything unparseable; callers fall back to arrival time.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_aware(raw).astimezone(timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        ts = float(raw)
        if ts > 1e11:  # milliseconds
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_aware(datetime.fromisoformat(text)).astimezone(timezone.utc)
        except ValueError:
            return None
    return None


def to_utc_timestamp_ms(dt: datetime) -> int:
    return int(ensure_aware(dt).timestamp() * 1000)
