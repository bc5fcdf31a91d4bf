"""Recovery and reconciliation tools.

``investigate`` rebuilds the expected totals from raw history and compares
them with the live progress record. ``restore`` is the operator-only escape
hatch that overwrites the record. Health and conservation checks report drift
and never correct it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import ConcurrencyDrift, ValidationError
from .ledger import require_int
from .levels import level_for_xp
from .models import (
    DAILY_PROGRESS,
    PROGRESS,
    REDEMPTIONS,
    TASK_COMPLETIONS,
    USER_ACHIEVEMENTS,
    XP_BACKUPS,
    ProgressRecord,
    RedemptionStatus,
    TransactionSource,
    TransactionType,
)
from .store import SERVER_TIMESTAMP, Transaction, where

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .ledger import GoldLedger
    from .progress import ProgressStore
    from .store import DocumentStore


@dataclass
class SourceTotals:
    xp: int = 0
    gold_earned: int = 0
    gold_spent: int = 0
    records: int = 0


@dataclass
class ProgressEstimate:
    total_xp: int
    level: int
    total_gold_earned: int
    total_gold_spent: int
    available_gold: int


@dataclass
class RecoveryReport:
    user_id: str
    current: ProgressRecord | None
    estimated: ProgressEstimate
    breakdown: dict[str, SourceTotals]
    recommendations: list[str] = field(default_factory=list)

    @property
    def xp_difference(self) -> int:
        return self.estimated.total_xp - (self.current.total_xp if self.current else 0)

    @property
    def gold_difference(self) -> int:
        return self.estimated.available_gold - (self.current.available_gold if self.current else 0)


@dataclass
class HealthReport:
    user_id: str
    healthy: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


class RecoveryTools:
    """Drift detection and operator-driven repair."""

    def __init__(
        self,
        config: LedgerConfig,
        store: DocumentStore,
        progress: ProgressStore,
        ledger: GoldLedger,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._store = store
        self._progress = progress
        self._ledger = ledger
        self._logger = logger

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Investigation
    # ══════════════════════════════════════════════════════════

    async def investigate(self, user_id: str) -> RecoveryReport:
        """Estimate the expected totals from raw history. Read-only."""
        by_user = [where("userId", "==", user_id)]
        breakdown = {
            "task_completions": SourceTotals(),
            "achievements": SourceTotals(),
            "daily_settlements": SourceTotals(),
            "redemptions": SourceTotals(),
        }

        for snap in await self._store.query(TASK_COMPLETIONS, by_user):
            totals = breakdown["task_completions"]
            totals.xp += int(snap.get("xpEarned", 0) or 0)
            totals.gold_earned += int(snap.get("goldEarned", 0) or 0)
            totals.records += 1

        for snap in await self._store.query(USER_ACHIEVEMENTS, by_user):
            if not snap.get("rewardClaimed"):
                continue
            totals = breakdown["achievements"]
            totals.xp += int(snap.get("xpReward", 0) or 0)
            totals.gold_earned += int(snap.get("goldReward", 0) or 0)
            totals.records += 1

        for snap in await self._store.query(DAILY_PROGRESS, by_user):
            if not snap.get("summaryProcessed"):
                continue
            totals = breakdown["daily_settlements"]
            totals.gold_earned += int(snap.get("allTasksBonusGold", 0) or 0)
            totals.gold_spent += int(snap.get("goldPenaltyApplied", 0) or 0)
            totals.records += 1

        for snap in await self._store.query(REDEMPTIONS, by_user):
            if RedemptionStatus(snap.get("status")).counts_as_spent:
                totals = breakdown["redemptions"]
                totals.gold_spent += int(snap.get("costGold", 0) or 0)
                totals.records += 1

        xp = sum(t.xp for t in breakdown.values())
        earned = sum(t.gold_earned for t in breakdown.values())
        spent = sum(t.gold_spent for t in breakdown.values())
        estimated = ProgressEstimate(
            total_xp=xp,
            level=level_for_xp(xp),
            total_gold_earned=earned,
            total_gold_spent=spent,
            available_gold=max(0, earned - spent),
        )

        snap = await self._store.get(PROGRESS, user_id)
        current = ProgressRecord.from_doc(user_id, snap.to_dict()) if snap.exists else None
        report = RecoveryReport(user_id, current, estimated, breakdown)

        if current is None:
            report.recommendations.append("No progress record found; it will be created on next login")
        if report.xp_difference > 0:
            report.recommendations.append(
                f"XP loss detected: {report.xp_difference} XP missing "
                f"(current {current.total_xp if current else 0}, expected {estimated.total_xp})"
            )
            report.recommendations.append("Run restore() to recover the expected progress")
        else:
            report.recommendations.append("XP matches history; no loss detected")
        if report.gold_difference > 0:
            report.recommendations.append(f"Gold loss detected: {report.gold_difference} Gold missing")
        if current is not None and current.level != estimated.level:
            report.recommendations.append(f"Level should be {estimated.level} (currently {current.level})")

        self._logger.info(
            "Investigated %s: XP %+d, Gold %+d versus history",
            user_id, report.xp_difference, report.gold_difference,
        )
        return report

    # ══════════════════════════════════════════════════════════
    #  Backup & Restore
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _backup_in_txn(txn: Transaction, user_id: str, data: dict[str, Any], reason: str, operator: str | None) -> str:
        backup_id = txn.new_id()
        txn.create(XP_BACKUPS, backup_id, {
            "userId": user_id,
            "progress": data,
            "reason": reason,
            "createdBy": operator,
            "createdAt": SERVER_TIMESTAMP,
        })
        return backup_id

    async def create_backup(self, user_id: str, reason: str, operator: str | None = None) -> str:
        """Copy the current progress record into ``xpBackups``; returns the backup id."""

        def _sync(txn: Transaction) -> str:
            data = self._progress.ensure_in_txn(txn, user_id)
            return self._backup_in_txn(txn, user_id, data, reason, operator)

        backup_id = await self._store.run_transaction(_sync)
        self._logger.info("Backed up progress for %s as %s (%s)", user_id, backup_id, reason)
        return backup_id

    async def restore(
        self, user_id: str, target_xp: int, target_gold: int, reason: str, operator: str,
    ) -> ProgressRecord:
        """Overwrite XP and Gold with operator-chosen targets.

        The previous record is backed up first. The Gold change is written as
        an adjustment entry so the ledger chain still ends at the new balance.
        """
        require_int(target_xp, "target_xp")
        require_int(target_gold, "target_gold")
        if target_xp < 0 or target_gold < 0:
            raise ValidationError("Restore targets cannot be negative")
        if not reason or not operator:
            raise ValidationError("Restore requires a reason and an operator")

        def _sync(txn: Transaction) -> dict[str, Any]:
            current = self._progress.ensure_in_txn(txn, user_id)
            self._backup_in_txn(txn, user_id, current, f"before restore: {reason}", operator)
            self._progress.write_snapshot(txn, user_id, current, f"before restore: {reason}")

            delta = target_gold - int(current.get("availableGold", 0))
            if delta:
                self._ledger.apply_entry(
                    txn, user_id, delta, TransactionType.ADJUSTMENT, TransactionSource.ADMIN_ADJUSTMENT,
                    f"Restauração de progresso: {reason}",
                    metadata={"restore": True, "reason": reason},
                    created_by=operator,
                )
            spent = int(txn.get(PROGRESS, user_id).get("totalGoldSpent", 0))
            txn.update(PROGRESS, user_id, {
                "totalXP": target_xp,
                "level": level_for_xp(target_xp),
                "availableGold": target_gold,
                "totalGoldEarned": target_gold + spent,
                "previousXP": int(current.get("totalXP", 0)),
                "previousLevel": int(current.get("level", 1)),
                "previousGold": int(current.get("availableGold", 0)),
                "restoredAt": SERVER_TIMESTAMP,
                "restoredBy": operator,
                "restorationReason": reason,
                "updatedAt": SERVER_TIMESTAMP,
            })
            return txn.get(PROGRESS, user_id).to_dict()

        data = await self._store.run_transaction(_sync)
        record = ProgressRecord.from_doc(user_id, data)
        self._logger.warning(
            "%s restored %s to %d XP / %d Gold: %s", operator, user_id, target_xp, target_gold, reason,
        )
        return record

    # ══════════════════════════════════════════════════════════
    #  Health
    # ══════════════════════════════════════════════════════════

    async def check_conservation(self, user_id: str) -> ConcurrencyDrift | None:
        """Compare the aggregate and the ledger chain; returns a finding or None."""
        tolerance = self._config.reconciliation.tolerance
        snap = await self._store.get(PROGRESS, user_id)
        if not snap.exists:
            return None
        record = ProgressRecord.from_doc(user_id, snap.to_dict())
        findings: list[str] = []
        details: dict[str, Any] = {}

        expected = record.total_gold_earned - record.total_gold_spent
        if abs(record.available_gold - expected) > tolerance:
            findings.append(
                f"availableGold {record.available_gold} != totalGoldEarned - totalGoldSpent ({expected})"
            )
            details["aggregate_difference"] = record.available_gold - expected

        chain = await self._ledger.reconstruct_balance(user_id)
        if chain.breaks:
            findings.append(f"ledger chain has {len(chain.breaks)} break(s)")
            details["chain_breaks"] = [b.entry_id for b in chain.breaks]
        if chain.entry_count and abs(chain.final_balance - record.available_gold) > tolerance:
            findings.append(
                f"ledger replay ends at {chain.final_balance}, live balance is {record.available_gold}"
            )
            details["chain_difference"] = record.available_gold - chain.final_balance

        if not findings:
            return None
        drift = ConcurrencyDrift(user_id, findings, details)
        self._logger.warning("%s", drift)
        return drift

    async def check_health(self, user_id: str) -> HealthReport:
        snap = await self._store.get(PROGRESS, user_id)
        report = HealthReport(user_id=user_id, healthy=True)
        if not snap.exists:
            report.issues.append("No progress document found")
            report.recommendations.append("Create initial progress document")
            report.healthy = False
            return report

        data = snap.to_dict()
        total_xp = int(data.get("totalXP", 0) or 0)
        level = int(data.get("level", 1) or 1)
        available = int(data.get("availableGold", 0) or 0)
        earned = int(data.get("totalGoldEarned", 0) or 0)

        expected_level = level_for_xp(total_xp)
        if level != expected_level:
            report.issues.append(f"Level mismatch: current {level}, expected {expected_level}")
            report.recommendations.append(f"Update level to {expected_level}")
        if total_xp < 0:
            report.issues.append("Negative XP detected")
            report.recommendations.append("Reset XP to 0 or investigate data corruption")
        if available < 0:
            report.issues.append("Negative available gold detected")
            report.recommendations.append("Reset gold to 0")
        if available > earned:
            report.issues.append(f"Available gold ({available}) exceeds total earned ({earned})")
            report.recommendations.append("Adjust available gold or total earned")

        drift = await self.check_conservation(user_id)
        if drift is not None:
            report.issues.extend(drift.findings)
            report.recommendations.append("Run investigate() and review the ledger before any restore")

        report.healthy = not report.issues
        return report
