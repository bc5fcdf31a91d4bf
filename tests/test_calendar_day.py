"""Tests for missions_ledger.calendar_day module."""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from missions_ledger.calendar_day import (
    BRAZIL_TZ,
    day_bounds,
    day_key,
    day_of,
    is_weekend,
    parse_day,
    parse_timestamp,
    period_start,
    to_iso,
    today,
    yesterday,
)


class TestDayOf:
    """Calendar day of a timestamp in the ledger zone."""

    def test_late_utc_is_previous_local_day(self):
        # 02:00 UTC is 23:00 the previous evening in Sao Paulo
        ts = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        assert day_of(ts) == date(2026, 3, 9)

    def test_naive_taken_as_utc(self):
        assert day_of(datetime(2026, 3, 10, 2, 0)) == date(2026, 3, 9)

    def test_other_zone(self):
        ts = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        assert day_of(ts, ZoneInfo("Europe/Lisbon")) == date(2026, 3, 10)

    def test_today_and_yesterday(self):
        now = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
        assert today(BRAZIL_TZ, now) == date(2026, 3, 10)
        assert yesterday(BRAZIL_TZ, now) == date(2026, 3, 9)


class TestBounds:
    """UTC bounds of a local day."""

    def test_day_bounds(self):
        start, end = day_bounds(date(2026, 3, 10))
        assert start == datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 11, 3, 0, tzinfo=timezone.utc)

    def test_period_start(self):
        now = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
        assert period_start("all", BRAZIL_TZ, now) is None
        assert period_start("today", BRAZIL_TZ, now) == datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)
        assert period_start("week", BRAZIL_TZ, now) == datetime(2026, 3, 4, 3, 0, tzinfo=timezone.utc)
        assert period_start("month", BRAZIL_TZ, now) == datetime(2026, 2, 9, 3, 0, tzinfo=timezone.utc)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start("fortnight")


class TestFormatting:
    """Keys and timestamps."""

    def test_day_key_round_trip(self):
        assert day_key(date(2026, 3, 1)) == "2026-03-01"
        assert parse_day("2026-03-01") == date(2026, 3, 1)
        assert parse_day(date(2026, 3, 1)) == date(2026, 3, 1)

    def test_to_iso_is_utc_with_microseconds(self):
        ts = datetime(2026, 3, 10, 9, 0, tzinfo=BRAZIL_TZ)
        assert to_iso(ts) == "2026-03-10T12:00:00.000000+00:00"

    def test_parse_timestamp(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("not a date") is None
        parsed = parse_timestamp("2026-03-10T12:00:00")
        assert parsed == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def test_is_weekend(self):
        assert is_weekend(date(2026, 3, 14))
        assert is_weekend(date(2026, 3, 15))
        assert not is_weekend(date(2026, 3, 16))
