"""Historical ledger backfill.

Rebuilds ``goldTransactions`` from task completions, redemptions and settled
days. Entry ids come from :func:`~missions_ledger.ledger.dedup_key` with the
same arguments the live writers use, so an event already recorded live (or by
an earlier run) is skipped instead of duplicated. A settled day that already
has ledger entries is replayed from those entries, since a reprocessed day
carries reversal and round-suffixed entries its final record cannot rebuild.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .calendar_day import day_bounds, parse_day, parse_timestamp
from .ledger import dedup_key
from .models import (
    DAILY_PROGRESS,
    GOLD_TRANSACTIONS,
    PROGRESS,
    REDEMPTIONS,
    TASK_COMPLETIONS,
    GoldTransaction,
    RedemptionStatus,
    TransactionSource,
    TransactionType,
)
from .store import where

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .store import DocumentStore


@dataclass
class HistoricalEvent:
    tx_id: str
    occurred_at: datetime
    amount: int
    type: TransactionType
    source: TransactionSource
    description: str
    related_id: str | None = None
    related_title: str | None = None
    metadata: dict[str, Any] | None = None
    sequence: int = 0


@dataclass
class MigrationResult:
    user_id: str
    created: int
    skipped: int
    running_balance: int
    live_balance: int
    mismatch: bool


@dataclass
class MigrationStatus:
    user_id: str
    total_transactions: int
    migrated_transactions: int
    oldest: datetime | None
    newest: datetime | None


class LedgerMigration:
    """Synthesizes ledger entries for history recorded before the ledger existed."""

    def __init__(self, config: LedgerConfig, store: DocumentStore, logger: logging.Logger) -> None:
        self._config = config
        self._store = store
        self._logger = logger

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Event collection
    # ══════════════════════════════════════════════════════════

    def _end_of_day(self, day_text: str) -> datetime:
        _, end = day_bounds(parse_day(day_text), self._config.calendar.tz)
        return end - timedelta(microseconds=1)

    def _replay(self, entry: GoldTransaction, day_text: str) -> HistoricalEvent:
        return HistoricalEvent(
            tx_id=entry.id,
            occurred_at=entry.created_at or self._end_of_day(day_text),
            amount=entry.amount,
            type=entry.type,
            source=entry.source,
            description=entry.description,
            related_id=entry.related_id,
            related_title=entry.related_title,
            metadata=entry.metadata,
            sequence=entry.sequence,
        )

    async def collect_events(self, user_id: str) -> list[HistoricalEvent]:
        """Every historical Gold event for *user_id*, oldest first."""
        by_user = [where("userId", "==", user_id)]
        events: list[HistoricalEvent] = []

        for snap in await self._store.query(TASK_COMPLETIONS, by_user):
            gold = int(snap.get("goldEarned", 0) or 0)
            if gold <= 0:
                continue
            title = snap.get("taskTitle") or "Tarefa"
            events.append(HistoricalEvent(
                tx_id=dedup_key(user_id, TASK_COMPLETIONS, snap.id, "earned"),
                occurred_at=parse_timestamp(snap.get("completedAt")) or self._end_of_day(snap.get("date")),
                amount=gold,
                type=TransactionType.EARNED,
                source=TransactionSource.TASK_COMPLETION,
                description=f"Tarefa concluída: {title}",
                related_id=snap.get("taskId"),
                related_title=title,
                metadata={"migrated": True, "completionId": snap.id, "originalDate": snap.get("date")},
            ))

        for snap in await self._store.query(REDEMPTIONS, by_user):
            cost = int(snap.get("costGold", 0) or 0)
            created = parse_timestamp(snap.get("createdAt"))
            if cost <= 0 or created is None:
                continue
            title = snap.get("rewardTitle") or "Recompensa"
            common = {
                "related_id": snap.get("rewardId"),
                "related_title": title,
                "metadata": {"migrated": True, "redemptionId": snap.id},
            }
            events.append(HistoricalEvent(
                tx_id=dedup_key(user_id, REDEMPTIONS, snap.id, "spent"),
                occurred_at=created,
                amount=-cost,
                type=TransactionType.SPENT,
                source=TransactionSource.REWARD_REDEMPTION,
                description=f"Resgate: {title}",
                **common,
            ))
            if RedemptionStatus(snap.get("status")) is RedemptionStatus.REJECTED:
                refunded = (
                    parse_timestamp(snap.get("resolvedAt"))
                    or parse_timestamp(snap.get("updatedAt"))
                    or created
                )
                events.append(HistoricalEvent(
                    tx_id=dedup_key(user_id, REDEMPTIONS, snap.id, "refund"),
                    occurred_at=max(refunded, created),
                    amount=cost,
                    type=TransactionType.REFUND,
                    source=TransactionSource.REDEMPTION_REFUND,
                    description=f"Reembolso: {title}",
                    **common,
                ))

        recorded: dict[str, list[GoldTransaction]] = {}
        for snap in await self._store.query(GOLD_TRANSACTIONS, by_user):
            entry = GoldTransaction.from_doc(snap.id, snap.to_dict())
            if entry.related_id:
                recorded.setdefault(entry.related_id, []).append(entry)

        for snap in await self._store.query(DAILY_PROGRESS, by_user):
            if not snap.get("summaryProcessed"):
                continue
            live = recorded.get(snap.id)
            if live:
                # Day already in the ledger: replay its entries, reprocess rounds included.
                events.extend(self._replay(entry, snap.get("date")) for entry in live)
                continue
            day_text = snap.get("date")
            occurred = parse_timestamp(snap.get("settledAt")) or self._end_of_day(day_text)
            bonus = int(snap.get("allTasksBonusGold", 0) or 0)
            penalty = int(snap.get("goldPenaltyApplied", snap.get("goldPenalty", 0)) or 0)
            metadata = {"migrated": True, "date": day_text}
            if bonus > 0:
                events.append(HistoricalEvent(
                    tx_id=dedup_key(user_id, DAILY_PROGRESS, snap.id, "bonus"),
                    occurred_at=occurred,
                    amount=bonus,
                    type=TransactionType.BONUS,
                    source=TransactionSource.DAILY_BONUS,
                    description=f"Bônus diário: todas as tarefas concluídas ({day_text})",
                    related_id=snap.id,
                    metadata=metadata,
                ))
            elif penalty > 0:
                events.append(HistoricalEvent(
                    tx_id=dedup_key(user_id, DAILY_PROGRESS, snap.id, "penalty"),
                    occurred_at=occurred,
                    amount=-penalty,
                    type=TransactionType.PENALTY,
                    source=TransactionSource.DAILY_PENALTY,
                    description=f"Penalidade diária ({day_text})",
                    related_id=snap.id,
                    metadata=metadata,
                ))

        events.sort(key=lambda e: (e.occurred_at, e.sequence, e.tx_id))
        return events

    # ══════════════════════════════════════════════════════════
    #  Migration
    # ══════════════════════════════════════════════════════════

    async def migrate_historical_ledger(self, user_id: str) -> MigrationResult:
        """Write the missing historical entries and compare the replay with the live balance.

        Safe to re-run after a partial failure. The progress record is never
        modified; a mismatch is reported for an operator to resolve.
        """
        events = await self.collect_events(user_id)
        batch_size = min(self._config.migration.batch_size, self._store.max_batch_writes)
        running = 0
        created = 0
        skipped = 0
        batch = self._store.batch()

        for event in events:
            existing = await self._store.get(GOLD_TRANSACTIONS, event.tx_id)
            if existing.exists:
                skipped += 1
                running = max(0, running + int(existing.get("amount", 0) or 0))
                continue
            applied = max(event.amount, -running)
            entry = GoldTransaction(
                id=event.tx_id,
                user_id=user_id,
                type=event.type,
                amount=applied,
                balance_before=running,
                balance_after=running + applied,
                source=event.source,
                description=event.description,
                created_at=event.occurred_at,
                related_id=event.related_id,
                related_title=event.related_title,
                metadata=event.metadata,
                created_by="migration",
            )
            batch.create(GOLD_TRANSACTIONS, entry.id, entry.to_doc())
            running = entry.balance_after
            created += 1
            if len(batch) >= batch_size:
                await batch.commit()
                batch = self._store.batch()
        if len(batch):
            await batch.commit()

        progress = await self._store.get(PROGRESS, user_id)
        live = int(progress.get("availableGold", 0) or 0)
        mismatch = abs(running - live) > self._config.reconciliation.tolerance
        result = MigrationResult(user_id, created, skipped, running, live, mismatch)
        if mismatch:
            self._logger.warning(
                "Migration for %s: replayed balance %d differs from live balance %d",
                user_id, running, live,
            )
        self._logger.info(
            "Migrated ledger for %s: %d created, %d already present", user_id, created, skipped,
        )
        return result

    async def check_migration_status(self, user_id: str) -> MigrationStatus:
        snaps = await self._store.query(GOLD_TRANSACTIONS, [where("userId", "==", user_id)])
        stamps = [t for t in (parse_timestamp(s.get("createdAt")) for s in snaps) if t is not None]
        migrated = sum(1 for s in snaps if (s.get("metadata") or {}).get("migrated"))
        return MigrationStatus(
            user_id=user_id,
            total_transactions=len(snaps),
            migrated_transactions=migrated,
            oldest=min(stamps) if stamps else None,
            newest=max(stamps) if stamps else None,
        )
