"""Gold transaction ledger.

Every Gold movement is one append-only ``goldTransactions`` entry written in
the same store transaction as the matching ``progress`` aggregate update.
"""

from __future__ import annotations

import csv
import hashlib
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from .calendar_day import period_start, to_iso
from .config import LedgerConfig
from .exceptions import InsufficientFunds, ValidationError
from .models import (
    GOLD_TRANSACTIONS,
    PROGRESS,
    GoldTransaction,
    TransactionSource,
    TransactionType,
)
from .progress import ProgressStore
from .store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    ListenerRegistration,
    Transaction,
    where,
)


def dedup_key(user_id: str, source_collection: str, source_doc_id: str, kind: str) -> str:
    """Deterministic ledger id for the entry *kind* caused by one source document.

    Live writers and the historical backfill derive the same id for the same
    event, so whichever runs second finds the entry already present.
    """
    raw = f"{user_id}|{source_collection}|{source_doc_id}|{kind}"
    return f"{kind}_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:32]}"


def require_int(value: Any, name: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return value


@dataclass(frozen=True)
class LedgerWrite:
    entry: GoldTransaction
    created: bool


@dataclass
class TransactionFilters:
    period: str = "all"
    type: TransactionType | None = None
    source: TransactionSource | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = None


@dataclass(frozen=True)
class ChainBreak:
    entry_id: str
    index: int
    reason: str
    expected: int
    actual: int


@dataclass
class ChainReport:
    user_id: str
    final_balance: int
    entry_count: int
    breaks: list[ChainBreak] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.breaks


class TransactionQuery:
    """Lazy, restartable listing of one user's entries, newest first.

    Each ``async for`` re-runs the query and pages through the store.
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        filters: TransactionFilters,
        config: LedgerConfig,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._filters = filters
        self._config = config

    def _store_filters(self) -> list[Filter]:
        f = self._filters
        result = [where("userId", "==", self._user_id)]
        if f.type is not None:
            result.append(where("type", "==", TransactionType(f.type).value))
        if f.source is not None:
            result.append(where("source", "==", TransactionSource(f.source).value))
        starts = [s for s in (period_start(f.period, self._config.calendar.tz), f.start) if s is not None]
        if starts:
            result.append(where("createdAt", ">=", max(to_iso(s) for s in starts)))
        if f.end is not None:
            result.append(where("createdAt", "<", to_iso(f.end)))
        return result

    def __aiter__(self) -> AsyncIterator[GoldTransaction]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[GoldTransaction]:
        filters = self._store_filters()
        page_size = self._config.store.page_size
        remaining = self._filters.limit
        offset = 0
        while remaining is None or remaining > 0:
            size = page_size if remaining is None else min(page_size, remaining)
            page = await self._store.query(
                GOLD_TRANSACTIONS, filters,
                order_by=[("createdAt", "desc"), ("sequence", "desc")],
                limit=size, offset=offset,
            )
            for snap in page:
                yield GoldTransaction.from_doc(snap.id, snap.to_dict())
            if len(page) < size:
                return
            offset += len(page)
            if remaining is not None:
                remaining -= len(page)

    async def to_list(self) -> list[GoldTransaction]:
        return [entry async for entry in self]


class GoldLedger:
    """Writes and reads ``goldTransactions``."""

    def __init__(
        self,
        config: LedgerConfig,
        store: DocumentStore,
        progress: ProgressStore,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._store = store
        self._progress = progress
        self._logger = logger

    def update_config(self, new_config: LedgerConfig) -> None:
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Transaction helper
    # ══════════════════════════════════════════════════════════

    def apply_entry(
        self,
        txn: Transaction,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
        source: TransactionSource,
        description: str,
        *,
        related_id: str | None = None,
        related_title: str | None = None,
        metadata: dict[str, Any] | None = None,
        tx_id: str | None = None,
        created_by: str | None = None,
        floor_at_zero: bool = False,
        reduces_spent: bool = False,
    ) -> LedgerWrite | None:
        """Write one entry and its aggregate update inside *txn*.

        Credits raise ``totalGoldEarned`` unless *reduces_spent* (refunds and
        penalty reversals), which lowers ``totalGoldSpent`` instead. Debits
        raise ``totalGoldSpent``. With *floor_at_zero* a debit is clamped to the
        available balance and the entry records the applied amount; when nothing
        is left to debit no entry is written and None is returned.
        """
        amount = require_int(amount)
        if amount == 0:
            raise ValidationError("Ledger entries must move a non-zero amount")
        if tx_id is not None:
            existing = txn.get(GOLD_TRANSACTIONS, tx_id)
            if existing.exists:
                return LedgerWrite(GoldTransaction.from_doc(tx_id, existing.to_dict()), created=False)

        progress = self._progress.ensure_in_txn(txn, user_id)
        before = int(progress.get("availableGold", 0))
        applied = amount
        if before + amount < 0:
            if not floor_at_zero:
                raise InsufficientFunds(user_id, -amount, before)
            applied = -before
        if applied == 0:
            return None
        after = before + applied
        sequence = int(progress.get("ledgerSequence", 0)) + 1

        updates: dict[str, Any] = {
            "availableGold": after,
            "ledgerSequence": sequence,
            "updatedAt": SERVER_TIMESTAMP,
        }
        earned = int(progress.get("totalGoldEarned", 0))
        spent = int(progress.get("totalGoldSpent", 0))
        if applied > 0 and reduces_spent:
            updates["totalGoldSpent"] = max(0, spent - applied)
        elif applied > 0:
            updates["totalGoldEarned"] = earned + applied
        elif applied < 0:
            updates["totalGoldSpent"] = spent - applied
        txn.update(PROGRESS, user_id, updates)

        entry = GoldTransaction(
            id=tx_id or txn.new_id(),
            user_id=user_id,
            type=TransactionType(tx_type),
            amount=applied,
            balance_before=before,
            balance_after=after,
            source=TransactionSource(source),
            description=description,
            created_at=txn.now,
            sequence=sequence,
            related_id=related_id,
            related_title=related_title,
            metadata=metadata,
            created_by=created_by,
        )
        txn.create(GOLD_TRANSACTIONS, entry.id, entry.to_doc())
        return LedgerWrite(entry, created=True)

    # ══════════════════════════════════════════════════════════
    #  Writes
    # ══════════════════════════════════════════════════════════

    async def record_transaction(
        self,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
        source: TransactionSource,
        description: str,
        **kwargs: Any,
    ) -> GoldTransaction | None:
        """Append one entry; a repeated ``tx_id`` returns the stored entry unchanged.

        Returns None when a floored debit finds no Gold to take.
        """
        result = await self._store.run_transaction(
            lambda txn: self.apply_entry(txn, user_id, amount, tx_type, source, description, **kwargs)
        )
        if result is None:
            self._logger.debug("Ledger debit for %s skipped: balance already zero", user_id)
            return None
        if result.created:
            self._logger.debug(
                "Ledger %s %+d for %s (%s) -> %d",
                result.entry.type.value, result.entry.amount, user_id,
                result.entry.source.value, result.entry.balance_after,
            )
        else:
            self._logger.debug("Ledger entry %s already recorded", result.entry.id)
        return result.entry

    async def credit_gold(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        description: str,
        related_id: str | None = None,
        tx_type: TransactionType = TransactionType.EARNED,
    ) -> int:
        """Add Gold and return the new balance."""
        if require_int(amount) <= 0:
            raise ValidationError(f"Credit amount must be positive, got {amount}")
        entry = await self.record_transaction(
            user_id, amount, tx_type, source, description, related_id=related_id,
        )
        return entry.balance_after

    async def debit_gold(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        description: str,
        related_id: str | None = None,
        tx_type: TransactionType = TransactionType.SPENT,
    ) -> int:
        """Remove Gold and return the new balance. Never goes below zero."""
        if require_int(amount) <= 0:
            raise ValidationError(f"Debit amount must be positive, got {amount}")
        entry = await self.record_transaction(
            user_id, -amount, tx_type, source, description, related_id=related_id,
        )
        return entry.balance_after

    async def adjust_gold(self, user_id: str, amount: int, reason: str, admin_uid: str) -> GoldTransaction | None:
        """Admin correction, clamped so the balance stays non-negative.

        A debit against an empty balance writes nothing and returns None.
        """
        require_int(amount)
        if not reason:
            raise ValidationError("Adjustments require a reason")
        entry = await self.record_transaction(
            user_id, amount, TransactionType.ADJUSTMENT, TransactionSource.ADMIN_ADJUSTMENT,
            f"Ajuste manual: {reason}",
            metadata={"reason": reason, "adjustedBy": admin_uid},
            created_by=admin_uid,
            floor_at_zero=True,
        )
        if entry is None:
            self._logger.info("Admin %s adjustment of %s skipped: no Gold to remove", admin_uid, user_id)
            return None
        self._logger.info(
            "Admin %s adjusted %s by %+d (%s) -> %d",
            admin_uid, user_id, entry.amount, reason, entry.balance_after,
        )
        return entry

    # ══════════════════════════════════════════════════════════
    #  Reads
    # ══════════════════════════════════════════════════════════

    def query_transactions(self, user_id: str, filters: TransactionFilters | None = None) -> TransactionQuery:
        return TransactionQuery(self._store, user_id, filters or TransactionFilters(), self._config)

    async def get_transaction(self, tx_id: str) -> GoldTransaction | None:
        snap = await self._store.get(GOLD_TRANSACTIONS, tx_id)
        return GoldTransaction.from_doc(tx_id, snap.to_dict()) if snap.exists else None

    async def entries_ascending(self, user_id: str) -> list[GoldTransaction]:
        snaps = await self._store.query(
            GOLD_TRANSACTIONS, [where("userId", "==", user_id)],
            order_by=[("createdAt", "asc"), ("sequence", "asc")],
        )
        return [GoldTransaction.from_doc(s.id, s.to_dict()) for s in snaps]

    async def reconstruct_balance(self, user_id: str) -> ChainReport:
        """Replay every entry from zero and report each broken link."""
        entries = await self.entries_ascending(user_id)
        report = ChainReport(user_id=user_id, final_balance=0, entry_count=len(entries))
        previous_after = 0
        for index, entry in enumerate(entries):
            if entry.balance_before != previous_after:
                report.breaks.append(ChainBreak(
                    entry.id, index, "balanceBefore does not match previous balanceAfter",
                    expected=previous_after, actual=entry.balance_before,
                ))
            elif entry.balance_after != entry.balance_before + entry.amount:
                report.breaks.append(ChainBreak(
                    entry.id, index, "balanceAfter != balanceBefore + amount",
                    expected=entry.balance_before + entry.amount, actual=entry.balance_after,
                ))
            report.final_balance += entry.amount
            previous_after = entry.balance_after
        if report.breaks:
            self._logger.warning("Ledger chain for %s has %d break(s)", user_id, len(report.breaks))
        return report

    async def export_transactions_csv(self, user_id: str, filters: TransactionFilters | None = None) -> str:
        """CSV of the filtered entries with local timestamps."""
        tz = self._config.calendar.tz
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow([
            "date", "type", "source", "description", "amount",
            "balanceBefore", "balanceAfter", "relatedTitle",
        ])
        async for entry in self.query_transactions(user_id, filters):
            local = entry.created_at.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else ""
            writer.writerow([
                local, entry.type.value, entry.source.value, entry.description, entry.amount,
                entry.balance_before, entry.balance_after, entry.related_title or "",
            ])
        return buffer.getvalue()

    def subscribe_transactions(
        self,
        user_id: str,
        callback: Callable[[list[GoldTransaction]], Any],
        limit: int = 50,
    ) -> ListenerRegistration:
        """Push the newest *limit* entries to *callback* after each change."""

        def _on_snapshot(snaps: list[DocumentSnapshot]) -> Any:
            return callback([GoldTransaction.from_doc(s.id, s.to_dict()) for s in snaps])

        return self._store.listen_query(
            GOLD_TRANSACTIONS, _on_snapshot,
            filters=[where("userId", "==", user_id)],
            order_by=[("createdAt", "desc"), ("sequence", "desc")],
            limit=limit,
        )
