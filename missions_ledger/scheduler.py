"""Periodic and scheduled tasks.

Nightly settlement of every user's unsettled days, and the punishment expiry
check.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from .calendar_day import now_utc

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .progress import ProgressStore
    from .punishment import PunishmentManager
    from .settlement import DailySettlementEngine
    from .tasks import TaskBoard


def seconds_until(now: datetime, hour: int, minute: int, tz: ZoneInfo) -> float:
    """Seconds from *now* until the next local ``hour:minute`` in *tz*."""
    local = now.astimezone(tz)
    target = datetime.combine(local.date(), time(hour, minute), tzinfo=tz)
    if local >= target:
        target = datetime.combine(local.date() + timedelta(days=1), time(hour, minute), tzinfo=tz)
    return (target - local).total_seconds()


class Scheduler:
    """Central module for all periodic and scheduled tasks."""

    def __init__(
        self,
        config: LedgerConfig,
        progress: ProgressStore,
        settlement: DailySettlementEngine,
        tasks: TaskBoard,
        punishments: PunishmentManager,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._progress = progress
        self._settlement = settlement
        self._tasks_board = tasks
        self._punishments = punishments
        self._logger = logger or logging.getLogger("ledger.scheduler")
        self._tasks: list[asyncio.Task] = []
        self.days_settled = 0
        self.punishments_released = 0

    def update_config(self, new_config: LedgerConfig) -> None:
        self._config = new_config

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.settlement.enabled:
            self._tasks.append(asyncio.create_task(self._nightly_settlement_loop()))
            self._logger.info(
                "Nightly settlement task started (%02d:%02d %s)",
                self._config.settlement.run_hour, self._config.settlement.run_minute,
                self._config.calendar.timezone,
            )

        self._tasks.append(asyncio.create_task(self._punishment_check_loop()))
        self._logger.info(
            "Punishment check task started (interval: %ds)", self._config.punishment.check_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ══════════════════════════════════════════════════════════
    #  Nightly Settlement
    # ══════════════════════════════════════════════════════════

    async def _nightly_settlement_loop(self) -> None:
        """Runs once per day at the configured local time."""
        while True:
            cfg = self._config.settlement
            wait_seconds = seconds_until(now_utc(), cfg.run_hour, cfg.run_minute, self._config.calendar.tz)
            await asyncio.sleep(wait_seconds)
            try:
                await self.run_nightly_settlement()
            except Exception:
                self._logger.exception("Nightly settlement failed")

    async def run_nightly_settlement(self) -> int:
        """Settle every user's pending days. Returns the number of days settled."""
        settled = 0
        for user_id in await self._progress.list_user_ids():
            try:
                await self._tasks_board.reset_outdated_tasks(user_id)
                outcomes = await self._settlement.process_unprocessed_days(user_id)
            except Exception:
                self._logger.exception("Settlement for %s failed", user_id)
                continue
            settled += sum(1 for o in outcomes if o.summary is not None)
        self.days_settled += settled
        self._logger.info("Nightly settlement: %d day(s) settled", settled)
        return settled

    # ══════════════════════════════════════════════════════════
    #  Punishment Expiry
    # ══════════════════════════════════════════════════════════

    async def _punishment_check_loop(self) -> None:
        """Release punishments whose time ran out."""
        while True:
            await asyncio.sleep(self._config.punishment.check_interval_seconds)
            try:
                await self.check_punishments()
            except Exception:
                self._logger.exception("Punishment check failed")

    async def check_punishments(self, now: datetime | None = None) -> int:
        released = 0
        for user_id in await self._punishments.active_user_ids():
            if await self._punishments.check_and_release(user_id, now) is not None:
                released += 1
        self.punishments_released += released
        return released
