from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Wall-clock 'now' in UTC (naive, canonical for storage and comparisons)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to UTC-naive; naive values are assumed UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "...Z" or "...+/-HH:MM" is converted to UTC
    - Raises ValueError for malformed input
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(s))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601 with trailing 'Z' (naive treated as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when expires_at is set and lies at or before `now` (evaluated at call time)."""
    if expires_at is None:
        return False
    current = to_naive_utc(now) if now is not None else utcnow()
    return to_naive_utc(expires_at) <= current
