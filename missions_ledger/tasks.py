"""Task board: the task catalog and completion recording that feed settlement."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from .calendar_day import day_bounds, day_key, day_of, now_utc, to_iso, today
from .config import LedgerConfig
from .exceptions import NotFound, ValidationError
from .ledger import GoldLedger, dedup_key
from .levels import LevelUp, check_level_up, level_for_xp
from .models import (
    DAILY_PROGRESS,
    PROGRESS,
    TASK_COMPLETIONS,
    TASKS,
    DailyProgressRecord,
    GoldTransaction,
    Task,
    TaskCompletion,
    TaskFrequency,
    TransactionSource,
    TransactionType,
)
from .progress import ProgressStore
from .store import SERVER_TIMESTAMP, DocumentStore, Increment, Transaction, where


@dataclass
class CompletionResult:
    completion: TaskCompletion
    entry: GoldTransaction | None
    new_balance: int
    level_up: LevelUp


class TaskBoard:
    """Manages ``tasks`` and ``taskCompletions`` for each user."""

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

    def update_config(self, new_config: LedgerConfig) -> None:
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Catalog
    # ══════════════════════════════════════════════════════════

    async def create_task(
        self,
        owner_id: str,
        title: str,
        xp: int,
        gold: int,
        frequency: TaskFrequency | str = TaskFrequency.DAILY,
        created_at: datetime | None = None,
    ) -> Task:
        if not owner_id:
            raise ValidationError("Tasks need an owner")
        if xp < 0 or gold < 0:
            raise ValidationError("Task rewards cannot be negative")
        doc = {
            "ownerId": owner_id,
            "title": title,
            "xp": xp,
            "gold": gold,
            "frequency": TaskFrequency(frequency).value,
            "active": True,
            "status": "pending",
            "createdAt": to_iso(created_at) if created_at else SERVER_TIMESTAMP,
        }
        task_id = await self._store.add(TASKS, doc)
        return await self.get_task(task_id)

    async def get_task(self, task_id: str) -> Task:
        snap = await self._store.get(TASKS, task_id)
        if not snap.exists:
            raise NotFound(TASKS, task_id)
        return Task.from_doc(task_id, snap.to_dict())

    async def set_active(self, task_id: str, active: bool) -> None:
        await self._store.update(TASKS, task_id, {"active": active, "updatedAt": SERVER_TIMESTAMP})

    def available_tasks_in_txn(self, txn: Transaction, user_id: str, day: date) -> list[Task]:
        """Active tasks that existed by the end of *day* and are due that weekday."""
        _, end = day_bounds(day, self._config.calendar.tz)
        snaps = txn.query(TASKS, [where("ownerId", "==", user_id), where("active", "==", True)])
        tasks = []
        for snap in snaps:
            task = Task.from_doc(snap.id, snap.to_dict())
            if task.created_at is not None and task.created_at >= end:
                continue
            if task.frequency.applies_on(day):
                tasks.append(task)
        return tasks

    def completions_in_txn(self, txn: Transaction, user_id: str, day: date) -> list[TaskCompletion]:
        snaps = txn.query(
            TASK_COMPLETIONS,
            [where("userId", "==", user_id), where("date", "==", day_key(day))],
        )
        return [TaskCompletion.from_doc(s.id, s.to_dict()) for s in snaps]

    async def completions_on(self, user_id: str, day: date) -> list[TaskCompletion]:
        return await self._store.run_transaction(
            lambda txn: self.completions_in_txn(txn, user_id, day), read_only=True,
        )

    # ══════════════════════════════════════════════════════════
    #  Completion
    # ══════════════════════════════════════════════════════════

    async def complete_task(self, user_id: str, task_id: str, now: datetime | None = None) -> CompletionResult:
        """Record a completion and pay its XP and Gold in one commit."""
        moment = now or now_utc()
        key = day_key(day_of(moment, self._config.calendar.tz))

        def _sync(txn: Transaction) -> tuple[TaskCompletion, GoldTransaction | None, int, int, int]:
            snap = txn.get(TASKS, task_id)
            if not snap.exists:
                raise NotFound(TASKS, task_id)
            task = Task.from_doc(task_id, snap.to_dict())
            if task.owner_id != user_id:
                raise ValidationError(f"Task {task_id} does not belong to {user_id}")
            if not task.active:
                raise ValidationError(f"Task {task_id} is not active")
            completion_id = f"{task_id}_{key}"
            if task.last_completed_date == key or txn.get(TASK_COMPLETIONS, completion_id).exists:
                raise ValidationError(f"Task '{task.title}' already completed on {key}")

            txn.update(TASKS, task_id, {
                "status": "done",
                "lastCompletedDate": key,
                "updatedAt": SERVER_TIMESTAMP,
            })
            completion_doc = {
                "taskId": task_id,
                "userId": user_id,
                "taskTitle": task.title,
                "date": key,
                "xpEarned": task.xp,
                "goldEarned": task.gold,
                "completedAt": to_iso(moment),
            }
            txn.create(TASK_COMPLETIONS, completion_id, completion_doc)

            progress = self._progress.ensure_in_txn(txn, user_id)
            old_xp = int(progress.get("totalXP", 0))
            new_xp = old_xp + task.xp
            txn.update(PROGRESS, user_id, {
                "totalXP": new_xp,
                "level": level_for_xp(new_xp),
                "totalTasksCompleted": Increment(1),
                "lastActivityDate": key,
                "updatedAt": SERVER_TIMESTAMP,
            })
            txn.set(DAILY_PROGRESS, DailyProgressRecord.doc_id(user_id, key), {
                "userId": user_id,
                "date": key,
                "xpEarned": Increment(task.xp),
                "goldEarned": Increment(task.gold),
                "updatedAt": SERVER_TIMESTAMP,
            }, merge=True)

            entry = None
            if task.gold > 0:
                entry = self._ledger.apply_entry(
                    txn, user_id, task.gold, TransactionType.EARNED, TransactionSource.TASK_COMPLETION,
                    f"Tarefa concluída: {task.title}",
                    related_id=task_id,
                    related_title=task.title,
                    metadata={"completionId": completion_id},
                    tx_id=dedup_key(user_id, TASK_COMPLETIONS, completion_id, "earned"),
                ).entry
            balance = int(txn.get(PROGRESS, user_id).get("availableGold", 0))
            return TaskCompletion.from_doc(completion_id, completion_doc), entry, balance, old_xp, new_xp

        completion, entry, balance, old_xp, new_xp = await self._store.run_transaction(_sync)
        level_up = check_level_up(old_xp, new_xp)
        self._logger.info(
            "%s completed '%s' (+%d XP, +%d Gold)", user_id, completion.task_title,
            completion.xp_earned, completion.gold_earned,
        )
        if level_up.leveled_up:
            self._logger.info("%s reached level %d", user_id, level_up.new_level)
        return CompletionResult(completion, entry, balance, level_up)

    async def reset_outdated_tasks(self, user_id: str, now: datetime | None = None) -> int:
        """Return tasks completed on an earlier day to ``pending``."""
        current = day_key(today(self._config.calendar.tz, now))

        def _sync(txn: Transaction) -> int:
            snaps = txn.query(TASKS, [where("ownerId", "==", user_id), where("status", "==", "done")])
            reset = 0
            for snap in snaps:
                last = snap.get("lastCompletedDate")
                if last is None or last < current:
                    txn.update(TASKS, snap.id, {"status": "pending", "updatedAt": SERVER_TIMESTAMP})
                    reset += 1
            return reset

        count = await self._store.run_transaction(_sync)
        if count:
            self._logger.debug("Reset %d outdated task(s) for %s", count, user_id)
        return count
