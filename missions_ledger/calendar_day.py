"""Calendar-day helpers for the ledger.

A settlement day is a plain :class:`datetime.date` interpreted in the ledger's
IANA zone (Brazil by default). Timestamps are stored as UTC ISO-8601 strings.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

BRAZIL_TZ = ZoneInfo("America/Sao_Paulo")


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a UTC ISO string. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(ts: str | datetime | None) -> datetime | None:
    """Parse a stored timestamp to a timezone-aware datetime, or None."""
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(ts)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def day_of(ts: datetime, tz: ZoneInfo = BRAZIL_TZ) -> date:
    """Calendar day that *ts* falls on in *tz*."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz).date()


def today(tz: ZoneInfo = BRAZIL_TZ, now: datetime | None = None) -> date:
    return day_of(now or now_utc(), tz)


def yesterday(tz: ZoneInfo = BRAZIL_TZ, now: datetime | None = None) -> date:
    return today(tz, now) - timedelta(days=1)


def day_bounds(day: date, tz: ZoneInfo = BRAZIL_TZ) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of *day* in *tz* as UTC datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def day_key(day: date) -> str:
    """YYYY-MM-DD string used in document ids and ``date`` fields."""
    return day.isoformat()


def parse_day(value: str | date) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def period_start(period: str, tz: ZoneInfo = BRAZIL_TZ, now: datetime | None = None) -> datetime | None:
    """Start of a reporting period ('today', 'week', 'month', 'all') as UTC."""
    current = today(tz, now)
    if period == "all":
        return None
    if period == "today":
        first = current
    elif period == "week":
        first = current - timedelta(days=6)
    elif period == "month":
        first = current - timedelta(days=29)
    else:
        raise ValueError(f"Unknown period: {period!r}")
    return day_bounds(first, tz)[0]
