"""Progress record store: one aggregate document per user.

Lazily created with all-zero defaults, updated by merge, guarded against
accidental XP and lifetime-earned regressions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .exceptions import NotFound, ValidationError
from .levels import check_level_up, level_for_xp
from .models import (
    DAILY_PROGRESS,
    GOLD_TRANSACTIONS,
    PROGRESS,
    PROGRESS_SNAPSHOTS,
    PUNISHMENTS,
    REDEMPTIONS,
    TASK_COMPLETIONS,
    ProgressRecord,
)
from .store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, ListenerRegistration, Transaction, where

# Progress updates whose reason mentions one of these may lower XP or totals.
CORRECTION_MARKERS = ("correction", "recovery")

_NUMERIC_FIELDS = (
    "level", "totalXP", "availableGold", "totalGoldEarned", "totalGoldSpent",
    "streak", "longestStreak", "rewardsRedeemed", "totalTasksCompleted",
)


@dataclass
class ProgressValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def is_correction(reason: str | None) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in CORRECTION_MARKERS)


def validate_progress_update(
    current: dict[str, Any], updates: dict[str, Any], reason: str = "",
) -> ProgressValidation:
    """Check a plain-value progress update for regressions and impossible values."""
    errors: list[str] = []
    warnings: list[str] = []
    allow_decrease = is_correction(reason)

    for key in _NUMERIC_FIELDS:
        if key in updates and isinstance(updates[key], (int, float)) and updates[key] < 0:
            errors.append(f"{key} cannot be negative ({updates[key]})")

    old_xp = int(current.get("totalXP", 0) or 0)
    new_xp = updates.get("totalXP")
    if isinstance(new_xp, (int, float)) and new_xp < old_xp:
        message = f"totalXP would decrease from {old_xp} to {new_xp}"
        (warnings if allow_decrease else errors).append(message)

    old_earned = int(current.get("totalGoldEarned", 0) or 0)
    new_earned = updates.get("totalGoldEarned")
    if isinstance(new_earned, (int, float)) and new_earned < old_earned:
        message = f"totalGoldEarned would decrease from {old_earned} to {new_earned}"
        (warnings if allow_decrease else errors).append(message)

    if isinstance(new_xp, (int, float)) and isinstance(updates.get("level"), int):
        expected = level_for_xp(int(new_xp))
        if updates["level"] != expected:
            warnings.append(f"level {updates['level']} does not match XP (expected {expected})")

    return ProgressValidation(is_valid=not errors, errors=errors, warnings=warnings)


class ProgressStore:
    """Reads and writes ``progress/{userId}``."""

    def __init__(self, store: DocumentStore, logger: logging.Logger) -> None:
        self._store = store
        self._logger = logger

    # ══════════════════════════════════════════════════════════
    #  Transaction helpers
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def ensure_in_txn(txn: Transaction, user_id: str) -> dict[str, Any]:
        """Return the user's progress data, creating the default document if missing."""
        if not user_id:
            raise ValidationError("user_id is required")
        snap = txn.get(PROGRESS, user_id)
        if snap.exists:
            return snap.to_dict()
        data = ProgressRecord.default_doc(user_id, txn.now_iso)
        txn.create(PROGRESS, user_id, data)
        return data

    @staticmethod
    def write_snapshot(txn: Transaction, user_id: str, data: dict[str, Any], reason: str) -> str:
        snapshot_id = txn.new_id()
        txn.create(PROGRESS_SNAPSHOTS, snapshot_id, {
            "userId": user_id,
            "progress": {k: data.get(k) for k in _NUMERIC_FIELDS},
            "reason": reason,
            "timestamp": SERVER_TIMESTAMP,
        })
        return snapshot_id

    # ══════════════════════════════════════════════════════════
    #  Reads
    # ══════════════════════════════════════════════════════════

    async def ensure_progress(self, user_id: str) -> ProgressRecord:
        data = await self._store.run_transaction(lambda txn: self.ensure_in_txn(txn, user_id))
        return ProgressRecord.from_doc(user_id, data)

    async def get_progress(self, user_id: str) -> ProgressRecord:
        """Current progress; a missing record is created with zero defaults."""
        snap = await self._store.get(PROGRESS, user_id)
        if snap.exists:
            return ProgressRecord.from_doc(user_id, snap.to_dict())
        return await self.ensure_progress(user_id)

    async def list_user_ids(self) -> list[str]:
        return [snap.id for snap in await self._store.query(PROGRESS)]

    def subscribe_progress(
        self, user_id: str, callback: Callable[[ProgressRecord | None], Any],
    ) -> ListenerRegistration:
        """Push the latest progress record to *callback* after each change."""

        def _on_snapshot(snap: DocumentSnapshot) -> Any:
            return callback(ProgressRecord.from_doc(user_id, snap.to_dict()) if snap.exists else None)

        return self._store.listen_document(PROGRESS, user_id, _on_snapshot)

    # ══════════════════════════════════════════════════════════
    #  Writes
    # ══════════════════════════════════════════════════════════

    async def update_progress(self, user_id: str, updates: dict[str, Any], reason: str = "") -> ProgressRecord:
        """Merge *updates* into the record after regression checks."""

        def _sync(txn: Transaction) -> dict[str, Any]:
            snap = txn.get(PROGRESS, user_id)
            if not snap.exists:
                raise NotFound(PROGRESS, user_id)
            current = snap.to_dict()
            validation = validate_progress_update(current, updates, reason)
            if not validation.is_valid:
                raise ValidationError("; ".join(validation.errors))
            for warning in validation.warnings:
                self._logger.warning("Progress update for %s: %s", user_id, warning)
            txn.update(PROGRESS, user_id, {**updates, "updatedAt": SERVER_TIMESTAMP})
            if validation.warnings:
                self.write_snapshot(txn, user_id, current, f"before update: {reason}")
            return txn.get(PROGRESS, user_id).to_dict()

        data = await self._store.run_transaction(_sync)
        return ProgressRecord.from_doc(user_id, data)

    async def adjust_xp(self, user_id: str, delta: int, reason: str = "") -> ProgressRecord:
        """Add *delta* XP and recompute the level.

        Negative deltas are only accepted when *reason* marks a correction or
        recovery; XP never drops below zero.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError(f"XP delta must be an integer, got {delta!r}")
        if delta < 0 and not is_correction(reason):
            raise ValidationError("Negative XP adjustments require a correction or recovery reason")

        def _sync(txn: Transaction) -> tuple[dict[str, Any], int]:
            current = self.ensure_in_txn(txn, user_id)
            old_xp = int(current.get("totalXP", 0))
            new_xp = max(0, old_xp + delta)
            if delta < 0:
                self.write_snapshot(txn, user_id, current, f"before XP correction: {reason}")
            txn.update(PROGRESS, user_id, {
                "totalXP": new_xp,
                "level": level_for_xp(new_xp),
                "updatedAt": SERVER_TIMESTAMP,
            })
            return txn.get(PROGRESS, user_id).to_dict(), old_xp

        data, old_xp = await self._store.run_transaction(_sync)
        record = ProgressRecord.from_doc(user_id, data)
        level_up = check_level_up(old_xp, record.total_xp)
        if level_up.leveled_up:
            self._logger.info(
                "%s reached level %d (+%d)", user_id, level_up.new_level, level_up.levels_gained,
            )
        return record

    async def reset_user(self, user_id: str) -> dict[str, int]:
        """Delete the user's ledger history and start over from zero defaults."""
        counts: dict[str, int] = {}
        for collection in (GOLD_TRANSACTIONS, TASK_COMPLETIONS, DAILY_PROGRESS, REDEMPTIONS, PUNISHMENTS):
            snaps = await self._store.query(collection, [where("userId", "==", user_id)])
            counts[collection] = len(snaps)
            for start in range(0, len(snaps), self._store.max_batch_writes):
                batch = self._store.batch()
                for snap in snaps[start:start + self._store.max_batch_writes]:
                    batch.delete(collection, snap.id)
                await batch.commit()

        def _reset(txn: Transaction) -> None:
            txn.set(PROGRESS, user_id, ProgressRecord.default_doc(user_id, txn.now_iso))

        await self._store.run_transaction(_reset)
        self._logger.warning("Reset all progress for %s: %s", user_id, counts)
        return counts
