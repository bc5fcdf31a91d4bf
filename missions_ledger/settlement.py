"""Daily settlement engine.

Once per user per calendar day, compare completed tasks with available tasks
and apply the all-tasks bonus or the incomplete-task penalty. The settled flag,
the ledger entry and the progress update are written in one transaction, and
the flag is checked inside that same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any

from .calendar_day import day_key, day_of, parse_day, today as calendar_today
from .config import LedgerConfig
from .exceptions import IdempotenceViolation
from .ledger import GoldLedger, dedup_key
from .models import (
    DAILY_PROGRESS,
    PROGRESS,
    DailyProgressRecord,
    TransactionSource,
    TransactionType,
)
from .progress import ProgressStore
from .store import SERVER_TIMESTAMP, DocumentStore, Transaction, where
from .tasks import TaskBoard


class SettlementResult(Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    REPROCESSED = "reprocessed"


@dataclass(frozen=True)
class DaySummary:
    user_id: str
    date: str
    total_tasks_available: int
    tasks_completed: int
    xp_earned: int
    gold_earned: int
    all_tasks_bonus_gold: int
    gold_penalty: int

    @property
    def perfect(self) -> bool:
        return self.total_tasks_available > 0 and self.tasks_completed == self.total_tasks_available


@dataclass(frozen=True)
class SettlementOutcome:
    result: SettlementResult
    user_id: str
    date: str
    summary: DaySummary | None = None
    bonus_applied: int = 0
    penalty_applied: int = 0
    reversal: int = 0
    new_balance: int | None = None


class DailySettlementEngine:
    """Evaluates and settles ``dailyProgress/{userId}_{date}``."""

    def __init__(
        self,
        config: LedgerConfig,
        store: DocumentStore,
        progress: ProgressStore,
        ledger: GoldLedger,
        tasks: TaskBoard,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._store = store
        self._progress = progress
        self._ledger = ledger
        self._tasks = tasks
        self._logger = logger

    def update_config(self, new_config: LedgerConfig) -> None:
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Evaluation
    # ══════════════════════════════════════════════════════════

    def _summarize(self, txn: Transaction, user_id: str, day: date) -> DaySummary:
        cfg = self._config.settlement
        available = self._tasks.available_tasks_in_txn(txn, user_id, day)
        completions = self._tasks.completions_in_txn(txn, user_id, day)
        available_ids = {task.id for task in available}
        completed = len({c.task_id for c in completions} & available_ids)

        bonus = 0
        penalty = 0
        if cfg.penalties_enabled and available:
            if completed == len(available):
                bonus = cfg.bonus_gold
            else:
                penalty = (len(available) - completed) * cfg.penalty_per_task

        return DaySummary(
            user_id=user_id,
            date=day_key(day),
            total_tasks_available=len(available),
            tasks_completed=completed,
            xp_earned=sum(c.xp_earned for c in completions),
            gold_earned=sum(c.gold_earned for c in completions),
            all_tasks_bonus_gold=bonus,
            gold_penalty=penalty,
        )

    async def evaluate_day(self, user_id: str, day: date) -> DaySummary:
        """What settling *day* would record. Writes nothing."""
        return await self._store.run_transaction(
            lambda txn: self._summarize(txn, user_id, day), read_only=True,
        )

    async def get_daily_progress(self, user_id: str, day: date) -> DailyProgressRecord | None:
        snap = await self._store.get(DAILY_PROGRESS, DailyProgressRecord.doc_id(user_id, day_key(day)))
        return DailyProgressRecord.from_doc(snap.to_dict()) if snap.exists else None

    # ══════════════════════════════════════════════════════════
    #  Settlement
    # ══════════════════════════════════════════════════════════

    def _reverse_previous(
        self, txn: Transaction, user_id: str, doc_id: str, previous: DailyProgressRecord,
        round_no: int, admin_uid: str | None,
    ) -> int:
        """Undo the Gold effect of an earlier settlement of the same day."""
        reversal = 0
        common: dict[str, Any] = {
            "related_id": doc_id,
            "created_by": admin_uid,
            "metadata": {"reprocess": round_no, "date": previous.date},
        }
        if previous.all_tasks_bonus_gold > 0:
            balance = int(txn.get(PROGRESS, user_id).get("availableGold", 0))
            if balance > 0:
                write = self._ledger.apply_entry(
                    txn, user_id, -previous.all_tasks_bonus_gold,
                    TransactionType.ADJUSTMENT, TransactionSource.ADMIN_ADJUSTMENT,
                    f"Estorno do bônus diário de {previous.date}",
                    tx_id=dedup_key(user_id, DAILY_PROGRESS, doc_id, f"reversal-r{round_no}"),
                    floor_at_zero=True, **common,
                )
                reversal += write.entry.amount
        if previous.gold_penalty_applied > 0:
            write = self._ledger.apply_entry(
                txn, user_id, previous.gold_penalty_applied,
                TransactionType.ADJUSTMENT, TransactionSource.ADMIN_ADJUSTMENT,
                f"Estorno da penalidade diária de {previous.date}",
                tx_id=dedup_key(user_id, DAILY_PROGRESS, doc_id, f"reversal-r{round_no}"),
                reduces_spent=True, **common,
            )
            reversal += write.entry.amount
        return reversal

    def _settle_in_txn(
        self, txn: Transaction, user_id: str, day: date, force: bool, admin_uid: str | None = None,
    ) -> SettlementOutcome:
        key = day_key(day)
        doc_id = DailyProgressRecord.doc_id(user_id, key)
        snap = txn.get(DAILY_PROGRESS, doc_id)
        previous = None
        if snap.exists and snap.get("summaryProcessed"):
            if not force:
                raise IdempotenceViolation(user_id, key)
            previous = DailyProgressRecord.from_doc(snap.to_dict())

        self._progress.ensure_in_txn(txn, user_id)
        summary = self._summarize(txn, user_id, day)
        round_no = previous.reprocess_count + 1 if previous else 0
        suffix = f"-r{round_no}" if round_no else ""

        reversal = 0
        if previous is not None:
            reversal = self._reverse_previous(txn, user_id, doc_id, previous, round_no, admin_uid)

        bonus_applied = 0
        penalty_applied = 0
        if summary.all_tasks_bonus_gold > 0:
            self._ledger.apply_entry(
                txn, user_id, summary.all_tasks_bonus_gold,
                TransactionType.BONUS, TransactionSource.DAILY_BONUS,
                f"Bônus diário: todas as {summary.total_tasks_available} tarefas concluídas ({key})",
                related_id=doc_id,
                metadata={"date": key, "tasksCompleted": summary.tasks_completed},
                tx_id=dedup_key(user_id, DAILY_PROGRESS, doc_id, f"bonus{suffix}"),
            )
            bonus_applied = summary.all_tasks_bonus_gold
        elif summary.gold_penalty > 0:
            balance = int(txn.get(PROGRESS, user_id).get("availableGold", 0))
            if balance > 0:
                write = self._ledger.apply_entry(
                    txn, user_id, -summary.gold_penalty,
                    TransactionType.PENALTY, TransactionSource.DAILY_PENALTY,
                    f"Penalidade diária: {summary.total_tasks_available - summary.tasks_completed} "
                    f"tarefa(s) pendente(s) ({key})",
                    related_id=doc_id,
                    metadata={
                        "date": key,
                        "tasksCompleted": summary.tasks_completed,
                        "totalTasksAvailable": summary.total_tasks_available,
                        "nominalPenalty": summary.gold_penalty,
                    },
                    tx_id=dedup_key(user_id, DAILY_PROGRESS, doc_id, f"penalty{suffix}"),
                    floor_at_zero=True,
                )
                penalty_applied = -write.entry.amount

        record: dict[str, Any] = {
            "userId": user_id,
            "date": key,
            "tasksCompleted": summary.tasks_completed,
            "totalTasksAvailable": summary.total_tasks_available,
            "xpEarned": summary.xp_earned,
            "goldEarned": summary.gold_earned,
            "goldPenalty": summary.gold_penalty,
            "goldPenaltyApplied": penalty_applied,
            "allTasksBonusGold": bonus_applied,
            "summaryProcessed": True,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if previous is None:
            record["settledAt"] = SERVER_TIMESTAMP
        else:
            record.update({
                "reprocessedAt": SERVER_TIMESTAMP,
                "reprocessCount": round_no,
                "reprocessedBy": admin_uid,
            })
        txn.set(DAILY_PROGRESS, doc_id, record, merge=True)

        progress = txn.get(PROGRESS, user_id).to_dict()
        streak = int(progress.get("streak", 0))
        was_perfect = previous is not None and previous.total_tasks_available > 0 and (
            previous.tasks_completed == previous.total_tasks_available
        )
        if summary.total_tasks_available > 0 and not (previous is not None and was_perfect == summary.perfect):
            streak = streak + 1 if summary.perfect else 0
        last_processed = progress.get("lastDailySummaryProcessedDate")
        txn.update(PROGRESS, user_id, {
            "streak": streak,
            "longestStreak": max(int(progress.get("longestStreak", 0)), streak),
            "lastDailySummaryProcessedDate": max(last_processed or key, key),
            "updatedAt": SERVER_TIMESTAMP,
        })

        return SettlementOutcome(
            result=SettlementResult.REPROCESSED if previous is not None else SettlementResult.SETTLED,
            user_id=user_id,
            date=key,
            summary=summary,
            bonus_applied=bonus_applied,
            penalty_applied=penalty_applied,
            reversal=reversal,
            new_balance=int(txn.get(PROGRESS, user_id).get("availableGold", 0)),
        )

    async def settle_day(self, user_id: str, day: date) -> SettlementOutcome:
        """Settle *day* once. A day that is already settled is left untouched."""
        try:
            outcome = await self._store.run_transaction(
                lambda txn: self._settle_in_txn(txn, user_id, day, force=False)
            )
        except IdempotenceViolation as exc:
            self._logger.debug("%s", exc)
            return SettlementOutcome(SettlementResult.ALREADY_SETTLED, user_id, day_key(day))
        self._logger.info(
            "Settled %s for %s: %d/%d tasks, bonus %d, penalty %d (nominal %d)",
            outcome.date, user_id, outcome.summary.tasks_completed,
            outcome.summary.total_tasks_available, outcome.bonus_applied,
            outcome.penalty_applied, outcome.summary.gold_penalty,
        )
        return outcome

    async def reprocess_day(self, user_id: str, day: date, admin_uid: str) -> SettlementOutcome:
        """Re-settle *day* regardless of its flag.

        The earlier bonus or penalty is reversed by an adjustment entry before
        the fresh evaluation is applied, all in the same commit.
        """
        outcome = await self._store.run_transaction(
            lambda txn: self._settle_in_txn(txn, user_id, day, force=True, admin_uid=admin_uid)
        )
        self._logger.warning(
            "Admin %s reprocessed %s for %s: reversal %+d, bonus %d, penalty %d",
            admin_uid, outcome.date, user_id, outcome.reversal,
            outcome.bonus_applied, outcome.penalty_applied,
        )
        return outcome

    async def process_unprocessed_days(self, user_id: str, today: date | None = None) -> list[SettlementOutcome]:
        """Settle the unsettled days before *today*, oldest first.

        Scans back from yesterday to the latest settled day, never past the
        user's first day. Only a user with no settled day at all is limited
        to the configured lookback window.
        """
        tz = self._config.calendar.tz
        current = today or calendar_today(tz)
        progress = await self._progress.get_progress(user_id)
        first_day = day_of(progress.created_at, tz) if progress.created_at else None

        latest = await self._store.query(DAILY_PROGRESS, [
            where("userId", "==", user_id),
            where("summaryProcessed", "==", True),
            where("date", "<", day_key(current)),
        ], order_by=[("date", "desc")], limit=1)
        if latest:
            oldest = parse_day(latest[0].get("date")) + timedelta(days=1)
        else:
            oldest = current - timedelta(days=self._config.settlement.lookback_days)
        if first_day is not None:
            oldest = max(oldest, first_day)

        pending: list[date] = []
        day = current - timedelta(days=1)
        while day >= oldest:
            record = await self.get_daily_progress(user_id, day)
            if record is not None and record.summary_processed:
                break
            pending.append(day)
            day -= timedelta(days=1)

        outcomes = []
        for day in reversed(pending):
            outcomes.append(await self.settle_day(user_id, day))
        return outcomes
