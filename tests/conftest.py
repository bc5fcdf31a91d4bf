"""Shared test fixtures for missions-ledger."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from missions_ledger.calendar_day import BRAZIL_TZ, to_iso
from missions_ledger.config import LedgerConfig
from missions_ledger.ledger import GoldLedger
from missions_ledger.migration import LedgerMigration
from missions_ledger.models import PROGRESS
from missions_ledger.progress import ProgressStore
from missions_ledger.punishment import PunishmentManager
from missions_ledger.recovery import RecoveryTools
from missions_ledger.redemption import RedemptionWorkflow
from missions_ledger.scheduler import Scheduler
from missions_ledger.settlement import DailySettlementEngine
from missions_ledger.store import DocumentStore
from missions_ledger.tasks import TaskBoard

USER = "heitor"
PARENT = "parent-uid"

# A Tuesday; tasks created at PAST are available on it.
DAY = date(2026, 3, 10)
SATURDAY = date(2026, 3, 14)
PAST = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def at_noon(day: date) -> datetime:
    """Local noon of *day* in the ledger zone."""
    return datetime.combine(day, time(12, 0), tzinfo=BRAZIL_TZ)


# ── Minimal config dict matching LedgerConfig schema ─────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": "ledger.db"},
        "store": {"max_batch_writes": 500, "page_size": 100},
        "calendar": {"timezone": "America/Sao_Paulo"},
        "settlement": {
            "enabled": True,
            "penalties_enabled": True,
            "bonus_gold": 10,
            "penalty_per_task": 1,
            "lookback_days": 7,
        },
        "redemption": {"min_daily_tasks": 0, "enforce_level": True},
        "punishment": {
            "duration_days": 7,
            "tasks_required": 3,
            "cooldown_minutes": 30,
            "check_interval_seconds": 60,
        },
        "reconciliation": {"tolerance": 1},
        "migration": {"batch_size": 100},
        "metrics": {"enabled": False, "host": "127.0.0.1", "port": 28290},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict(tmp_db_path: str) -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict(database={"path": tmp_db_path})


@pytest.fixture
def sample_config(sample_config_dict: dict) -> LedgerConfig:
    """Return a parsed LedgerConfig."""
    return LedgerConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_ledger.db")


@pytest_asyncio.fixture
async def store(tmp_db_path: str) -> AsyncGenerator[DocumentStore, None]:
    """Provide an initialized document store with temp file."""
    doc_store = DocumentStore(tmp_db_path, logging.getLogger("test"))
    await doc_store.initialize()
    yield doc_store
    await doc_store.close()


# ── Components ───────────────────────────────────────────────

@pytest.fixture
def progress_store(store: DocumentStore) -> ProgressStore:
    return ProgressStore(store, logging.getLogger("test"))


@pytest.fixture
def ledger(sample_config: LedgerConfig, store: DocumentStore, progress_store: ProgressStore) -> GoldLedger:
    return GoldLedger(sample_config, store, progress_store, logging.getLogger("test"))


@pytest.fixture
def task_board(
    sample_config: LedgerConfig,
    store: DocumentStore,
    progress_store: ProgressStore,
    ledger: GoldLedger,
) -> TaskBoard:
    return TaskBoard(sample_config, store, progress_store, ledger, logging.getLogger("test"))


@pytest.fixture
def settlement(
    sample_config: LedgerConfig,
    store: DocumentStore,
    progress_store: ProgressStore,
    ledger: GoldLedger,
    task_board: TaskBoard,
) -> DailySettlementEngine:
    return DailySettlementEngine(
        config=sample_config,
        store=store,
        progress=progress_store,
        ledger=ledger,
        tasks=task_board,
        logger=logging.getLogger("test"),
    )


@pytest.fixture
def redemptions(
    sample_config: LedgerConfig,
    store: DocumentStore,
    progress_store: ProgressStore,
    ledger: GoldLedger,
    task_board: TaskBoard,
) -> RedemptionWorkflow:
    return RedemptionWorkflow(
        config=sample_config,
        store=store,
        progress=progress_store,
        ledger=ledger,
        tasks=task_board,
        logger=logging.getLogger("test"),
    )


@pytest.fixture
def punishments(sample_config: LedgerConfig, store: DocumentStore) -> PunishmentManager:
    return PunishmentManager(sample_config, store, logging.getLogger("test"))


@pytest.fixture
def recovery(
    sample_config: LedgerConfig,
    store: DocumentStore,
    progress_store: ProgressStore,
    ledger: GoldLedger,
) -> RecoveryTools:
    return RecoveryTools(sample_config, store, progress_store, ledger, logging.getLogger("test"))


@pytest.fixture
def migration(sample_config: LedgerConfig, store: DocumentStore) -> LedgerMigration:
    return LedgerMigration(sample_config, store, logging.getLogger("test"))


@pytest.fixture
def scheduler(
    sample_config: LedgerConfig,
    progress_store: ProgressStore,
    settlement: DailySettlementEngine,
    task_board: TaskBoard,
    punishments: PunishmentManager,
) -> Scheduler:
    return Scheduler(
        config=sample_config,
        progress=progress_store,
        settlement=settlement,
        tasks=task_board,
        punishments=punishments,
        logger=logging.getLogger("test"),
    )


# ── Helpers ──────────────────────────────────────────────────

async def backdate_progress(store: DocumentStore, user_id: str, created_at: datetime) -> None:
    """Create the progress record if needed and move its ``createdAt`` back."""
    progress = ProgressStore(store, logging.getLogger("test"))
    await progress.ensure_progress(user_id)
    await store.update(PROGRESS, user_id, {"createdAt": to_iso(created_at)})


async def seed_tasks(task_board: TaskBoard, count: int, gold: int = 5, xp: int = 10, **kwargs) -> list:
    """Create *count* daily tasks for USER that exist long before DAY."""
    kwargs.setdefault("created_at", PAST)
    return [
        await task_board.create_task(USER, f"Tarefa {i + 1}", xp=xp, gold=gold, **kwargs)
        for i in range(count)
    ]


def days_before(day: date, n: int) -> date:
    return day - timedelta(days=n)
