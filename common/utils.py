from __future__ import annotations

from typing import Optional, Any
from datetime import date, datetime, timezone
import math

_DAY_S = 24 * 60 * 60


def parse_iso8601(ts: str) -> datetime:
    """
    Parse an ISO-8601 timestamp with optional 'Z'. Naive values are taken as UTC.
    """
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def try_parse_iso8601(ts: Any) -> Optional[datetime]:
    if not isinstance(ts, str) or not ts:
        return None
    try:
        return parse_iso8601(ts)
    except ValueError:
        return None


def parse_utc_date(day: str) -> datetime:
    """Interpret YYYY-MM-DD as midnight UTC (no local timezone surprises)."""
    d = date.fromisoformat(day)
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def days_between(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / _DAY_S


def finite_or_none(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v) if math.isfinite(v) else None


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))
