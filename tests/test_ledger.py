"""Tests for missions_ledger.ledger module."""

from __future__ import annotations

import asyncio
import csv
import io
import logging

import pytest

from missions_ledger.config import LedgerConfig
from missions_ledger.exceptions import InsufficientFunds, ValidationError
from missions_ledger.ledger import GoldLedger, TransactionFilters, dedup_key
from missions_ledger.models import GOLD_TRANSACTIONS, PROGRESS, TransactionSource, TransactionType
from missions_ledger.progress import ProgressStore
from missions_ledger.store import DocumentStore, where

from conftest import USER, make_config_dict


async def assert_conserved(store: DocumentStore, user_id: str = USER) -> None:
    snap = await store.get(PROGRESS, user_id)
    assert snap.get("availableGold") == snap.get("totalGoldEarned") - snap.get("totalGoldSpent")
    assert snap.get("availableGold") >= 0


class TestDedupKey:
    """Deterministic ledger ids."""

    def test_stable(self):
        a = dedup_key(USER, "taskCompletions", "c1", "earned")
        b = dedup_key(USER, "taskCompletions", "c1", "earned")
        assert a == b
        assert a.startswith("earned_")

    def test_differs_by_kind_and_source(self):
        keys = {
            dedup_key(USER, "taskCompletions", "c1", "earned"),
            dedup_key(USER, "taskCompletions", "c2", "earned"),
            dedup_key(USER, "redemptions", "c1", "earned"),
            dedup_key(USER, "taskCompletions", "c1", "refund"),
            dedup_key("other", "taskCompletions", "c1", "earned"),
        }
        assert len(keys) == 5


class TestCreditDebit:
    """creditGold / debitGold contract."""

    async def test_credit_returns_new_balance(self, ledger: GoldLedger, store: DocumentStore):
        assert await ledger.credit_gold(USER, 20, TransactionSource.QUIZ, "Quiz") == 20
        assert await ledger.credit_gold(USER, 5, TransactionSource.ACHIEVEMENT, "Conquista") == 25
        snap = await store.get(PROGRESS, USER)
        assert snap.get("totalGoldEarned") == 25
        await assert_conserved(store)

    async def test_entry_carries_running_balance(self, ledger: GoldLedger):
        await ledger.credit_gold(USER, 20, TransactionSource.QUIZ, "Quiz", related_id="quiz-1")
        await ledger.debit_gold(USER, 8, TransactionSource.REWARD_REDEMPTION, "Sorvete")
        entries = await ledger.entries_ascending(USER)
        assert [(e.balance_before, e.amount, e.balance_after) for e in entries] == [(0, 20, 20), (20, -8, 12)]
        assert entries[0].type is TransactionType.EARNED
        assert entries[0].related_id == "quiz-1"
        assert entries[1].type is TransactionType.SPENT
        assert [e.sequence for e in entries] == [1, 2]

    async def test_debit_updates_spent(self, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 20, TransactionSource.QUIZ, "Quiz")
        assert await ledger.debit_gold(USER, 20, TransactionSource.REWARD_REDEMPTION, "Cinema") == 0
        snap = await store.get(PROGRESS, USER)
        assert snap.get("totalGoldSpent") == 20
        await assert_conserved(store)

    async def test_overdraft_raises_and_writes_nothing(self, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 5, TransactionSource.QUIZ, "Quiz")
        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.debit_gold(USER, 6, TransactionSource.REWARD_REDEMPTION, "Cinema")
        assert exc_info.value.available == 5
        assert exc_info.value.requested == 6
        assert (await store.get(PROGRESS, USER)).get("availableGold") == 5
        assert await store.count(GOLD_TRANSACTIONS) == 1

    @pytest.mark.parametrize("amount", [0, -5, 2.5, "10", True])
    async def test_invalid_credit_amounts(self, ledger: GoldLedger, store: DocumentStore, amount):
        with pytest.raises(ValidationError):
            await ledger.credit_gold(USER, amount, TransactionSource.QUIZ, "Quiz")
        assert await store.count(GOLD_TRANSACTIONS) == 0

    async def test_invalid_debit_amount(self, ledger: GoldLedger):
        with pytest.raises(ValidationError):
            await ledger.debit_gold(USER, 0, TransactionSource.REWARD_REDEMPTION, "Nada")

    async def test_concurrent_debits_cannot_overspend(self, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 10, TransactionSource.QUIZ, "Quiz")
        results = await asyncio.gather(
            ledger.debit_gold(USER, 10, TransactionSource.REWARD_REDEMPTION, "A"),
            ledger.debit_gold(USER, 10, TransactionSource.REWARD_REDEMPTION, "B"),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, InsufficientFunds)) == 1
        assert (await store.get(PROGRESS, USER)).get("availableGold") == 0
        await assert_conserved(store)


class TestRecordTransaction:
    """Generic entry recording."""

    async def test_repeated_tx_id_is_noop(self, ledger: GoldLedger, store: DocumentStore):
        first = await ledger.record_transaction(
            USER, 7, TransactionType.EARNED, TransactionSource.SURPRISE_MISSION, "Missão", tx_id="fixed-id",
        )
        second = await ledger.record_transaction(
            USER, 7, TransactionType.EARNED, TransactionSource.SURPRISE_MISSION, "Missão", tx_id="fixed-id",
        )
        assert first.id == second.id == "fixed-id"
        assert (await store.get(PROGRESS, USER)).get("availableGold") == 7
        assert await store.count(GOLD_TRANSACTIONS) == 1

    async def test_metadata_persisted(self, ledger: GoldLedger):
        entry = await ledger.record_transaction(
            USER, 3, TransactionType.BONUS, TransactionSource.QUIZ, "Quiz",
            metadata={"quizId": "q1"}, related_title="Quiz de ciências",
        )
        stored = await ledger.get_transaction(entry.id)
        assert stored.metadata == {"quizId": "q1"}
        assert stored.related_title == "Quiz de ciências"

    async def test_get_missing_transaction(self, ledger: GoldLedger):
        assert await ledger.get_transaction("nope") is None


class TestAdjustGold:
    """Admin corrections."""

    async def test_negative_adjustment_clamped(self, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 5, TransactionSource.QUIZ, "Quiz")
        entry = await ledger.adjust_gold(USER, -10, "erro de digitação", "admin-1")
        assert entry.amount == -5
        assert entry.balance_after == 0
        assert entry.type is TransactionType.ADJUSTMENT
        assert entry.created_by == "admin-1"
        await assert_conserved(store)

    async def test_negative_adjustment_on_empty_balance(self, ledger: GoldLedger, store: DocumentStore):
        assert await ledger.adjust_gold(USER, -5, "correction", "admin-1") is None
        assert await store.count(GOLD_TRANSACTIONS) == 0
        report = await ledger.reconstruct_balance(USER)
        assert report.entry_count == 0

    async def test_positive_adjustment(self, ledger: GoldLedger, store: DocumentStore):
        entry = await ledger.adjust_gold(USER, 12, "bônus", "admin-1")
        assert entry.balance_after == 12
        await assert_conserved(store)

    async def test_adjustment_requires_reason(self, ledger: GoldLedger):
        with pytest.raises(ValidationError):
            await ledger.adjust_gold(USER, 5, "", "admin-1")

    async def test_non_numeric_adjustment(self, ledger: GoldLedger):
        with pytest.raises(ValidationError):
            await ledger.adjust_gold(USER, "5", "typo", "admin-1")


class TestQueryTransactions:
    """Lazy, restartable listing."""

    async def _seed(self, ledger: GoldLedger) -> None:
        await ledger.credit_gold(USER, 10, TransactionSource.TASK_COMPLETION, "Tarefa 1")
        await ledger.credit_gold(USER, 4, TransactionSource.QUIZ, "Quiz")
        await ledger.debit_gold(USER, 3, TransactionSource.REWARD_REDEMPTION, "Bala")
        await ledger.credit_gold("someone-else", 99, TransactionSource.QUIZ, "Quiz")

    async def test_newest_first(self, ledger: GoldLedger):
        await self._seed(ledger)
        entries = await ledger.query_transactions(USER).to_list()
        assert [e.amount for e in entries] == [-3, 4, 10]

    async def test_filter_by_type_and_source(self, ledger: GoldLedger):
        await self._seed(ledger)
        spent = await ledger.query_transactions(USER, TransactionFilters(type=TransactionType.SPENT)).to_list()
        assert [e.amount for e in spent] == [-3]
        quiz = await ledger.query_transactions(USER, TransactionFilters(source=TransactionSource.QUIZ)).to_list()
        assert [e.amount for e in quiz] == [4]

    async def test_period_today_includes_fresh_entries(self, ledger: GoldLedger):
        await self._seed(ledger)
        entries = await ledger.query_transactions(USER, TransactionFilters(period="today")).to_list()
        assert len(entries) == 3

    async def test_limit(self, ledger: GoldLedger):
        await self._seed(ledger)
        entries = await ledger.query_transactions(USER, TransactionFilters(limit=2)).to_list()
        assert [e.amount for e in entries] == [-3, 4]

    async def test_paging_and_restart(self, store: DocumentStore, progress_store: ProgressStore):
        config = LedgerConfig(**make_config_dict(store={"page_size": 2}))
        paged = GoldLedger(config, store, progress_store, logging.getLogger("test"))
        for i in range(5):
            await paged.credit_gold(USER, i + 1, TransactionSource.QUIZ, f"Quiz {i}")
        query = paged.query_transactions(USER)
        first = [e.amount async for e in query]
        second = [e.amount async for e in query]
        assert first == second == [5, 4, 3, 2, 1]


class TestReconstructBalance:
    """Chain replay."""

    async def test_consistent_chain(self, ledger: GoldLedger):
        await ledger.credit_gold(USER, 10, TransactionSource.QUIZ, "Quiz")
        await ledger.debit_gold(USER, 4, TransactionSource.REWARD_REDEMPTION, "Bala")
        report = await ledger.reconstruct_balance(USER)
        assert report.consistent
        assert report.final_balance == 6
        assert report.entry_count == 2

    async def test_single_corrupted_entry_is_one_break(self, ledger: GoldLedger, store: DocumentStore):
        await ledger.credit_gold(USER, 10, TransactionSource.QUIZ, "Quiz")
        await ledger.credit_gold(USER, 5, TransactionSource.QUIZ, "Quiz")
        await ledger.debit_gold(USER, 3, TransactionSource.REWARD_REDEMPTION, "Bala")
        middle = (await ledger.entries_ascending(USER))[1]
        await store.update(GOLD_TRANSACTIONS, middle.id, {"balanceBefore": 7})

        report = await ledger.reconstruct_balance(USER)
        assert len(report.breaks) == 1
        assert report.breaks[0].entry_id == middle.id
        assert report.breaks[0].expected == 10
        assert report.breaks[0].actual == 7
        assert report.final_balance == 12

    async def test_empty_ledger(self, ledger: GoldLedger):
        report = await ledger.reconstruct_balance(USER)
        assert report.consistent
        assert report.final_balance == 0


class TestExportCsv:
    """CSV formatting of query results."""

    async def test_export(self, ledger: GoldLedger):
        await ledger.credit_gold(USER, 10, TransactionSource.QUIZ, "Quiz, difícil")
        await ledger.debit_gold(USER, 4, TransactionSource.REWARD_REDEMPTION, "Bala")
        text = await ledger.export_transactions_csv(USER)
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == [
            "date", "type", "source", "description", "amount",
            "balanceBefore", "balanceAfter", "relatedTitle",
        ]
        assert rows[1][1:7] == ["spent", "reward_redemption", "Bala", "-4", "10", "6"]
        assert rows[2][3] == "Quiz, difícil"
        assert len(rows) == 3

    async def test_export_empty(self, ledger: GoldLedger):
        text = await ledger.export_transactions_csv(USER)
        assert text.count("\n") == 1


class TestSubscribeTransactions:
    """Live ledger stream."""

    async def test_subscribe(self, ledger: GoldLedger, store: DocumentStore):
        received = []
        ledger.subscribe_transactions(USER, received.append, limit=2)
        await store.wait_for_listeners()
        for amount in (1, 2, 3):
            await ledger.credit_gold(USER, amount, TransactionSource.QUIZ, "Quiz")
        await store.wait_for_listeners()
        assert received[0] == []
        assert [e.amount for e in received[-1]] == [3, 2]
        assert all(snap.get("userId") == USER for snap in await store.query(
            GOLD_TRANSACTIONS, [where("userId", "==", USER)],
        ))
