"""Tests for missions_ledger.scheduler module."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from missions_ledger.calendar_day import BRAZIL_TZ, now_utc
from missions_ledger.punishment import PunishmentManager
from missions_ledger.scheduler import Scheduler, seconds_until
from missions_ledger.store import DocumentStore

from conftest import USER, backdate_progress


class TestSecondsUntil:
    """Next local run time."""

    def test_later_today(self):
        # 02:00 UTC is 23:00 the previous evening in Sao Paulo
        now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        assert seconds_until(now, 0, 5, BRAZIL_TZ) == 3900

    def test_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 10, 3, 5, tzinfo=timezone.utc)  # 00:05 local
        assert seconds_until(now, 0, 5, BRAZIL_TZ) == 24 * 3600


class TestNightlySettlement:
    """Settlement sweep across users."""

    async def test_settles_pending_days(self, scheduler: Scheduler, store: DocumentStore):
        await backdate_progress(store, USER, now_utc() - timedelta(days=2))

        settled = await scheduler.run_nightly_settlement()

        assert settled == 2
        assert scheduler.days_settled == 2
        assert await scheduler.run_nightly_settlement() == 0

    async def test_no_users(self, scheduler: Scheduler):
        assert await scheduler.run_nightly_settlement() == 0


class TestPunishmentCheck:
    """Expiry sweep."""

    async def test_releases_expired(self, scheduler: Scheduler, punishments: PunishmentManager):
        started = now_utc() - timedelta(days=8)
        await punishments.activate(USER, "Respondeu mal", now=started)

        released = await scheduler.check_punishments()

        assert released == 1
        assert scheduler.punishments_released == 1
        assert await punishments.get_active(USER) is None

    async def test_keeps_running_punishment(self, scheduler: Scheduler, punishments: PunishmentManager):
        punishment = await punishments.activate(USER, "Respondeu mal")
        assert await scheduler.check_punishments() == 0
        active = await punishments.get_active(USER)
        assert active.id == punishment.id
        assert active.deactivation_reason is None


class TestLifecycle:
    """Start/stop of background tasks."""

    async def test_start_and_stop(self, scheduler: Scheduler):
        await scheduler.start()
        assert len(scheduler._tasks) == 2
        await asyncio.sleep(0)
        await scheduler.stop()
        assert scheduler._tasks == []

    async def test_settlement_disabled(self, scheduler: Scheduler, sample_config):
        sample_config.settlement.enabled = False
        await scheduler.start()
        assert len(scheduler._tasks) == 1
        await scheduler.stop()
