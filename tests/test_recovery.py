"""Tests for missions_ledger.recovery module."""

from __future__ import annotations

import pytest

from missions_ledger.exceptions import ConcurrencyDrift, ValidationError
from missions_ledger.ledger import GoldLedger
from missions_ledger.models import (
    GOLD_TRANSACTIONS,
    PROGRESS,
    PROGRESS_SNAPSHOTS,
    USER_ACHIEVEMENTS,
    XP_BACKUPS,
    TransactionType,
)
from missions_ledger.recovery import RecoveryTools
from missions_ledger.redemption import RedemptionWorkflow
from missions_ledger.settlement import DailySettlementEngine
from missions_ledger.store import DocumentStore
from missions_ledger.tasks import TaskBoard

from conftest import DAY, PARENT, USER, at_noon, seed_tasks


async def build_history(task_board: TaskBoard, settlement: DailySettlementEngine, redemptions: RedemptionWorkflow):
    """Two completions (10 XP / 5 Gold each), a bonus day and one approved redemption."""
    tasks = await seed_tasks(task_board, 2)
    for task in tasks:
        await task_board.complete_task(USER, task.id, now=at_noon(DAY))
    await settlement.settle_day(USER, DAY)
    reward = await redemptions.create_reward(PARENT, "Bala", cost_gold=6)
    redemption = await redemptions.request_redemption(USER, reward.id)
    await redemptions.resolve_redemption(redemption.id, approved=True, approved_by="admin-1")


class TestInvestigate:
    """Estimate from raw history."""

    async def test_matches_live_record(
        self, recovery: RecoveryTools, task_board: TaskBoard,
        settlement: DailySettlementEngine, redemptions: RedemptionWorkflow,
    ):
        await build_history(task_board, settlement, redemptions)

        report = await recovery.investigate(USER)

        assert report.estimated.total_xp == 20
        assert report.estimated.total_gold_earned == 20
        assert report.estimated.total_gold_spent == 6
        assert report.estimated.available_gold == 14
        assert report.current.available_gold == 14
        assert report.xp_difference == 0
        assert report.gold_difference == 0
        assert report.breakdown["task_completions"].records == 2
        assert report.breakdown["daily_settlements"].gold_earned == 10
        assert report.breakdown["redemptions"].gold_spent == 6

    async def test_detects_loss(self, recovery: RecoveryTools, task_board: TaskBoard, store: DocumentStore):
        tasks = await seed_tasks(task_board, 1, xp=40, gold=5)
        await task_board.complete_task(USER, tasks[0].id, now=at_noon(DAY))
        await store.update(PROGRESS, USER, {"totalXP": 0, "level": 1})

        report = await recovery.investigate(USER)

        assert report.xp_difference == 40
        assert any("XP loss" in r for r in report.recommendations)

    async def test_claimed_achievements_counted(self, recovery: RecoveryTools, store: DocumentStore):
        await store.set(USER_ACHIEVEMENTS, "a1", {"userId": USER, "rewardClaimed": True, "xpReward": 50, "goldReward": 7})
        await store.set(USER_ACHIEVEMENTS, "a2", {"userId": USER, "rewardClaimed": False, "xpReward": 99, "goldReward": 99})

        report = await recovery.investigate(USER)

        assert report.breakdown["achievements"].records == 1
        assert report.estimated.total_xp == 50
        assert report.estimated.available_gold == 7
        assert report.current is None

    async def test_investigate_writes_nothing(self, recovery: RecoveryTools, store: DocumentStore):
        await recovery.investigate(USER)
        assert not (await store.get(PROGRESS, USER)).exists


class TestRestore:
    """Operator overwrite."""

    async def test_restore_overwrites_and_backs_up(
        self, recovery: RecoveryTools, ledger: GoldLedger, store: DocumentStore, task_board: TaskBoard,
    ):
        tasks = await seed_tasks(task_board, 1, xp=40, gold=5)
        await task_board.complete_task(USER, tasks[0].id, now=at_noon(DAY))

        record = await recovery.restore(USER, target_xp=300, target_gold=25, reason="perda de XP", operator="admin-1")

        assert record.total_xp == 300
        assert record.level == 3
        assert record.available_gold == 25
        assert record.total_gold_earned == 25 + record.total_gold_spent
        assert record.extra["previousXP"] == 40
        assert record.extra["previousGold"] == 5
        assert record.extra["restoredBy"] == "admin-1"
        assert await store.count(XP_BACKUPS) == 1
        assert await store.count(PROGRESS_SNAPSHOTS) == 1

        entries = await ledger.entries_ascending(USER)
        assert entries[-1].type is TransactionType.ADJUSTMENT
        assert entries[-1].amount == 20
        assert await recovery.check_conservation(USER) is None

    async def test_restore_requires_reason_and_operator(self, recovery: RecoveryTools):
        with pytest.raises(ValidationError):
            await recovery.restore(USER, 10, 10, reason="", operator="admin-1")
        with pytest.raises(ValidationError):
            await recovery.restore(USER, 10, 10, reason="x", operator="")

    async def test_restore_rejects_negative_and_non_numeric(self, recovery: RecoveryTools):
        with pytest.raises(ValidationError):
            await recovery.restore(USER, -1, 10, reason="x", operator="admin-1")
        with pytest.raises(ValidationError):
            await recovery.restore(USER, 10, "10", reason="x", operator="admin-1")

    async def test_create_backup(self, recovery: RecoveryTools, store: DocumentStore):
        backup_id = await recovery.create_backup(USER, "manual", operator="admin-1")
        backup = await store.get(XP_BACKUPS, backup_id)
        assert backup.get("progress")["userId"] == USER
        assert backup.get("reason") == "manual"


class TestConservation:
    """Drift detection."""

    async def test_clean_history_has_no_drift(
        self, recovery: RecoveryTools, task_board: TaskBoard,
        settlement: DailySettlementEngine, redemptions: RedemptionWorkflow,
    ):
        await build_history(task_board, settlement, redemptions)
        assert await recovery.check_conservation(USER) is None
        health = await recovery.check_health(USER)
        assert health.healthy

    async def test_aggregate_drift_reported_not_corrected(
        self, recovery: RecoveryTools, ledger: GoldLedger, store: DocumentStore,
    ):
        await ledger.credit_gold(USER, 10, "quiz", "Quiz")
        await store.update(PROGRESS, USER, {"availableGold": 30})

        drift = await recovery.check_conservation(USER)

        assert isinstance(drift, ConcurrencyDrift)
        assert drift.details["aggregate_difference"] == 20
        assert drift.details["chain_difference"] == 20
        assert (await store.get(PROGRESS, USER)).get("availableGold") == 30

    async def test_within_tolerance(self, recovery: RecoveryTools, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 10, "quiz", "Quiz")
        await store.update(PROGRESS, USER, {"availableGold": 11})
        drift = await recovery.check_conservation(USER)
        assert drift is None

    async def test_chain_break_reported(self, recovery: RecoveryTools, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 10, "quiz", "Quiz")
        await ledger.credit_gold(USER, 5, "quiz", "Quiz")
        second = (await ledger.entries_ascending(USER))[1]
        await store.update(GOLD_TRANSACTIONS, second.id, {"balanceBefore": 0})

        drift = await recovery.check_conservation(USER)

        assert drift.details["chain_breaks"] == [second.id]

    async def test_missing_user(self, recovery: RecoveryTools):
        assert await recovery.check_conservation("ghost") is None
        health = await recovery.check_health("ghost")
        assert not health.healthy

    async def test_health_flags_level_mismatch(self, recovery: RecoveryTools, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 10, "quiz", "Quiz")
        await store.update(PROGRESS, USER, {"totalXP": 300, "level": 1})
        health = await recovery.check_health(USER)
        assert not health.healthy
        assert any("Level mismatch" in issue for issue in health.issues)
