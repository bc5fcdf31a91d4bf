"""Punishment mode: a lockout released by completed tasks or elapsed time."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .calendar_day import now_utc, parse_timestamp, to_iso
from .config import LedgerConfig
from .exceptions import NotFound, RateLimited, ValidationError
from .models import PUNISHMENTS, DeactivationReason, PunishmentMode
from .store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    ListenerRegistration,
    Precondition,
    Transaction,
    where,
)


def time_remaining(punishment: PunishmentMode, now: datetime | None = None) -> timedelta:
    """Time left until the punishment expires on its own (never negative)."""
    if not punishment.is_active:
        return timedelta(0)
    return max(timedelta(0), punishment.end_date - (now or now_utc()))


class PunishmentManager:
    """Owns ``punishments`` documents; at most one active per user."""

    def __init__(self, config: LedgerConfig, store: DocumentStore, logger: logging.Logger) -> None:
        self._config = config
        self._store = store
        self._logger = logger

    def update_config(self, new_config: LedgerConfig) -> None:
        self._config = new_config

    @staticmethod
    def _active_in_txn(txn: Transaction, user_id: str) -> DocumentSnapshot | None:
        snaps = txn.query(PUNISHMENTS, [
            where("userId", "==", user_id), where("isActive", "==", True),
        ], order_by=[("startDate", "desc")], limit=1)
        return snaps[0] if snaps else None

    @staticmethod
    def _release(txn: Transaction, snap: DocumentSnapshot, reason: DeactivationReason, now: datetime) -> None:
        txn.update(PUNISHMENTS, snap.id, {
            "isActive": False,
            "deactivatedAt": to_iso(now),
            "deactivationReason": reason.value,
            "updatedAt": SERVER_TIMESTAMP,
        }, precondition=Precondition(equals={"isActive": True}))

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def activate(self, user_id: str, reason: str, now: datetime | None = None) -> PunishmentMode:
        if not user_id:
            raise ValidationError("No target child selected for punishment")
        cfg = self._config.punishment
        start = now or now_utc()

        def _sync(txn: Transaction) -> PunishmentMode:
            if self._active_in_txn(txn, user_id) is not None:
                raise ValidationError(f"{user_id} already has an active punishment")
            punishment_id = txn.new_id()
            doc = {
                "userId": user_id,
                "isActive": True,
                "reason": reason,
                "startDate": to_iso(start),
                "endDate": to_iso(start + timedelta(days=cfg.duration_days)),
                "tasksCompleted": 0,
                "tasksRequired": cfg.tasks_required,
                "completedTasks": [],
                "createdAt": SERVER_TIMESTAMP,
            }
            txn.create(PUNISHMENTS, punishment_id, doc)
            return PunishmentMode.from_doc(punishment_id, doc)

        punishment = await self._store.run_transaction(_sync)
        self._logger.warning(
            "Punishment %s activated for %s until %s: %s",
            punishment.id, user_id, punishment.end_date.isoformat(), reason,
        )
        return punishment

    async def get_active(self, user_id: str) -> PunishmentMode | None:
        snap = await self._store.run_transaction(
            lambda txn: self._active_in_txn(txn, user_id), read_only=True,
        )
        return PunishmentMode.from_doc(snap.id, snap.to_dict()) if snap else None

    async def complete_task(
        self, user_id: str, task_id: str, task_title: str = "", now: datetime | None = None,
    ) -> PunishmentMode:
        """Count one punishment task; releases the user when enough are done."""
        cfg = self._config.punishment
        moment = now or now_utc()
        cooldown = timedelta(minutes=cfg.cooldown_minutes)

        def _sync(txn: Transaction) -> tuple[PunishmentMode, bool]:
            snap = self._active_in_txn(txn, user_id)
            if snap is None:
                raise NotFound(PUNISHMENTS, f"active:{user_id}")
            last = parse_timestamp(snap.get("lastTaskCompletedAt"))
            if last is not None and moment - last < cooldown:
                wait = cooldown - (moment - last)
                raise RateLimited(
                    f"Wait {int(wait.total_seconds() // 60) + 1} minute(s) before the next punishment task",
                    wait.total_seconds(),
                )
            completed = int(snap.get("tasksCompleted", 0)) + 1
            log = list(snap.get("completedTasks") or [])
            log.append({"taskId": task_id, "taskTitle": task_title, "completedAt": to_iso(moment)})
            txn.update(PUNISHMENTS, snap.id, {
                "tasksCompleted": completed,
                "lastTaskCompletedAt": to_iso(moment),
                "completedTasks": log,
                "updatedAt": SERVER_TIMESTAMP,
            }, precondition=Precondition(version=snap.version))
            released = completed >= int(snap.get("tasksRequired", cfg.tasks_required))
            if released:
                self._release(txn, txn.get(PUNISHMENTS, snap.id), DeactivationReason.TASKS_COMPLETED, moment)
            return PunishmentMode.from_doc(snap.id, txn.get(PUNISHMENTS, snap.id).to_dict()), released

        punishment, released = await self._store.run_transaction(_sync)
        if released:
            self._logger.info("%s completed %d punishment tasks and is released", user_id, punishment.tasks_completed)
        else:
            self._logger.debug(
                "%s punishment task %d/%d", user_id, punishment.tasks_completed, punishment.tasks_required,
            )
        return punishment

    async def check_and_release(self, user_id: str, now: datetime | None = None) -> PunishmentMode | None:
        """Release the active punishment if its time or task goal is reached.

        Returns the released record, or None when nothing changed.
        """
        moment = now or now_utc()

        def _sync(txn: Transaction) -> PunishmentMode | None:
            snap = self._active_in_txn(txn, user_id)
            if snap is None:
                return None
            punishment = PunishmentMode.from_doc(snap.id, snap.to_dict())
            if punishment.tasks_completed >= punishment.tasks_required:
                reason = DeactivationReason.TASKS_COMPLETED
            elif moment >= punishment.end_date:
                reason = DeactivationReason.TIME_COMPLETED
            else:
                return None
            self._release(txn, snap, reason, moment)
            return PunishmentMode.from_doc(snap.id, txn.get(PUNISHMENTS, snap.id).to_dict())

        released = await self._store.run_transaction(_sync)
        if released is not None:
            self._logger.info(
                "Punishment %s for %s released (%s)",
                released.id, user_id, released.deactivation_reason.value,
            )
        return released

    async def deactivate(
        self,
        punishment_id: str,
        reason: DeactivationReason = DeactivationReason.ADMIN,
        now: datetime | None = None,
    ) -> PunishmentMode:
        moment = now or now_utc()

        def _sync(txn: Transaction) -> PunishmentMode:
            snap = txn.get(PUNISHMENTS, punishment_id)
            if not snap.exists:
                raise NotFound(PUNISHMENTS, punishment_id)
            if snap.get("isActive"):
                self._release(txn, snap, DeactivationReason(reason), moment)
            return PunishmentMode.from_doc(punishment_id, txn.get(PUNISHMENTS, punishment_id).to_dict())

        punishment = await self._store.run_transaction(_sync)
        self._logger.info("Punishment %s deactivated (%s)", punishment_id, DeactivationReason(reason).value)
        return punishment

    async def active_user_ids(self) -> list[str]:
        snaps = await self._store.query(PUNISHMENTS, [where("isActive", "==", True)])
        return sorted({snap.get("userId") for snap in snaps})

    def subscribe_active(
        self, user_id: str, callback: Callable[[PunishmentMode | None], Any],
    ) -> ListenerRegistration:
        """Push the user's active punishment (or None) after each change."""

        def _on_snapshot(snaps: list[DocumentSnapshot]) -> Any:
            return callback(PunishmentMode.from_doc(snaps[0].id, snaps[0].to_dict()) if snaps else None)

        return self._store.listen_query(
            PUNISHMENTS, _on_snapshot,
            filters=[where("userId", "==", user_id), where("isActive", "==", True)],
            order_by=[("startDate", "desc")],
            limit=1,
        )
