"""Service orchestrator for the missions ledger.

config → store init → domain components → scheduler → metrics → run.
The public coroutine methods are the operation contract used by the app's
collaborators (task screens, reward shop, admin tools).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

from . import __version__
from .config import LedgerConfig, load_config
from .exceptions import ValidationError
from .ledger import GoldLedger, TransactionFilters
from .metrics_server import LedgerMetricsServer
from .migration import LedgerMigration
from .models import (
    ProgressRecord,
    PunishmentMode,
    RewardRedemption,
    TransactionSource,
)
from .progress import ProgressStore
from .punishment import PunishmentManager
from .recovery import RecoveryTools
from .redemption import RedemptionWorkflow
from .scheduler import Scheduler
from .settlement import DailySettlementEngine, SettlementOutcome, SettlementResult
from .store import DocumentStore, ListenerRegistration
from .tasks import CompletionResult, TaskBoard


@dataclass
class LoginSummary:
    progress: ProgressRecord
    tasks_reset: int
    settlements: list[SettlementOutcome] = field(default_factory=list)
    punishment_released: PunishmentMode | None = None


class LedgerApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str | None = None, config: LedgerConfig | None = None) -> None:
        if config_path is None and config is None:
            raise ValueError("LedgerApp needs a config path or a LedgerConfig")
        self.config_path = Path(config_path) if config_path else None
        self.config: LedgerConfig | None = config
        self.logger = logging.getLogger("ledger")

        # Components (initialized in initialize())
        self.store: DocumentStore | None = None
        self.progress: ProgressStore | None = None
        self.ledger: GoldLedger | None = None
        self.tasks: TaskBoard | None = None
        self.settlement: DailySettlementEngine | None = None
        self.redemptions: RedemptionWorkflow | None = None
        self.punishments: PunishmentManager | None = None
        self.recovery: RecoveryTools | None = None
        self.migration: LedgerMigration | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: LedgerMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._stop_event = asyncio.Event()

        # Counters (for metrics)
        self.gold_credited_total: int = 0
        self.gold_debited_total: int = 0
        self.tasks_completed_total: int = 0
        self.redemptions_requested_total: int = 0
        self.redemptions_resolved_total: int = 0
        self.drift_findings_total: int = 0
        self._days_settled: int = 0

    @property
    def days_settled_total(self) -> int:
        scheduled = self.scheduler.days_settled if self.scheduler else 0
        return self._days_settled + scheduled

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Load config, open the store and build every component."""
        if self.config is None:
            self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded (timezone %s)", self.config.calendar.timezone)

        self.store = DocumentStore(
            self.config.database.path,
            logging.getLogger("ledger.store"),
            max_batch_writes=self.config.store.max_batch_writes,
        )
        await self.store.initialize()

        self.progress = ProgressStore(self.store, logging.getLogger("ledger.progress"))
        self.ledger = GoldLedger(self.config, self.store, self.progress, logging.getLogger("ledger.gold"))
        self.tasks = TaskBoard(
            self.config, self.store, self.progress, self.ledger, logging.getLogger("ledger.tasks"),
        )
        self.settlement = DailySettlementEngine(
            config=self.config,
            store=self.store,
            progress=self.progress,
            ledger=self.ledger,
            tasks=self.tasks,
            logger=logging.getLogger("ledger.settlement"),
        )
        self.redemptions = RedemptionWorkflow(
            config=self.config,
            store=self.store,
            progress=self.progress,
            ledger=self.ledger,
            tasks=self.tasks,
            logger=logging.getLogger("ledger.redemption"),
        )
        self.punishments = PunishmentManager(self.config, self.store, logging.getLogger("ledger.punishment"))
        self.recovery = RecoveryTools(
            self.config, self.store, self.progress, self.ledger, logging.getLogger("ledger.recovery"),
        )
        self.migration = LedgerMigration(self.config, self.store, logging.getLogger("ledger.migration"))
        self.scheduler = Scheduler(
            config=self.config,
            progress=self.progress,
            settlement=self.settlement,
            tasks=self.tasks,
            punishments=self.punishments,
            logger=logging.getLogger("ledger.scheduler"),
        )

    async def start(self) -> None:
        """Start the ledger service and block until stop() is called."""
        self.logger.info("Starting missions-ledger...")
        self._start_time = time.time()
        await self.initialize()

        await self.scheduler.start()
        if self.config.metrics.enabled:
            self.metrics_server = LedgerMetricsServer(
                self, host=self.config.metrics.host, port=self.config.metrics.port,
            )
            await self.metrics_server.start()

        self._running = True
        self.logger.info("missions-ledger started successfully (v%s)", __version__)
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        self._stop_event.set()
        if not self._running:
            if self.store:
                await self.store.close()
            return
        self.logger.info("Shutting down missions-ledger...")
        self._running = False

        if self.metrics_server:
            await self.metrics_server.stop()
        if self.scheduler:
            await self.scheduler.stop()
        if self.store:
            await self.store.close()

        self.logger.info("missions-ledger stopped.")

    def reload_config(self, new_config: LedgerConfig) -> None:
        """Hot-swap config on every component."""
        self.config = new_config
        for component in (
            self.ledger, self.tasks, self.settlement, self.redemptions,
            self.punishments, self.recovery, self.migration, self.scheduler,
        ):
            if component is not None:
                component.update_config(new_config)
        self.logger.info("Config reloaded")

    # ══════════════════════════════════════════════════════════
    #  Operation Contract
    # ══════════════════════════════════════════════════════════

    async def credit_gold(
        self, user_id: str, amount: int, source: TransactionSource, description: str,
        related_id: str | None = None,
    ) -> int:
        balance = await self.ledger.credit_gold(user_id, amount, source, description, related_id)
        self.gold_credited_total += amount
        return balance

    async def debit_gold(
        self, user_id: str, amount: int, source: TransactionSource, description: str,
        related_id: str | None = None,
    ) -> int:
        balance = await self.ledger.debit_gold(user_id, amount, source, description, related_id)
        self.gold_debited_total += amount
        return balance

    async def adjust_xp(self, user_id: str, delta: int, reason: str = "") -> ProgressRecord:
        return await self.progress.adjust_xp(user_id, delta, reason)

    async def get_progress(self, user_id: str) -> ProgressRecord:
        return await self.progress.get_progress(user_id)

    def subscribe_progress(
        self, user_id: str, callback: Callable[[ProgressRecord | None], Any],
    ) -> ListenerRegistration:
        return self.progress.subscribe_progress(user_id, callback)

    async def settle_day(
        self, user_id: str, day: date, force: bool = False, admin_uid: str | None = None,
    ) -> SettlementOutcome:
        """Settle *day*; ``force`` reprocesses a settled day and needs ``admin_uid``."""
        if force:
            if not admin_uid:
                raise ValidationError("Forced settlement requires an admin")
            outcome = await self.settlement.reprocess_day(user_id, day, admin_uid)
        else:
            outcome = await self.settlement.settle_day(user_id, day)
        if outcome.result is not SettlementResult.ALREADY_SETTLED:
            self._days_settled += 1
        return outcome

    async def complete_task(self, user_id: str, task_id: str, now: datetime | None = None) -> CompletionResult:
        result = await self.tasks.complete_task(user_id, task_id, now)
        self.tasks_completed_total += 1
        if result.entry is not None:
            self.gold_credited_total += result.entry.amount
        return result

    async def request_redemption(self, user_id: str, reward_id: str, now: datetime | None = None) -> RewardRedemption:
        redemption = await self.redemptions.request_redemption(user_id, reward_id, now)
        self.redemptions_requested_total += 1
        self.gold_debited_total += redemption.cost_gold
        return redemption

    async def resolve_redemption(self, redemption_id: str, approved: bool, approved_by: str) -> RewardRedemption:
        redemption = await self.redemptions.resolve_redemption(redemption_id, approved, approved_by)
        self.redemptions_resolved_total += 1
        return redemption

    async def export_transactions_csv(self, user_id: str, filters: TransactionFilters | None = None) -> str:
        return await self.ledger.export_transactions_csv(user_id, filters)

    async def check_conservation(self, user_id: str):
        drift = await self.recovery.check_conservation(user_id)
        if drift is not None:
            self.drift_findings_total += len(drift.findings)
        return drift

    async def on_login(self, user_id: str, now: datetime | None = None) -> LoginSummary:
        """Bootstrap for a session: settle missed days and refresh task state."""
        progress = await self.progress.ensure_progress(user_id)
        tasks_reset = await self.tasks.reset_outdated_tasks(user_id, now)
        today = None
        if now is not None:
            today = now.astimezone(self.config.calendar.tz).date()
        settlements = await self.settlement.process_unprocessed_days(user_id, today)
        self._days_settled += sum(1 for o in settlements if o.result is not SettlementResult.ALREADY_SETTLED)
        released = await self.punishments.check_and_release(user_id, now)
        if settlements:
            progress = await self.progress.get_progress(user_id)
        return LoginSummary(progress, tasks_reset, settlements, released)
