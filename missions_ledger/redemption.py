"""Redemption workflow: request, then approve or reject.

Gold leaves the available balance when a redemption is requested. Approval
only closes the request; rejection refunds the cost.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .calendar_day import day_of, now_utc
from .exceptions import InsufficientFunds, NotFound, NotPending, ValidationError
from .ledger import dedup_key
from .models import (
    PROGRESS,
    REDEMPTIONS,
    REWARDS,
    RedemptionStatus,
    Reward,
    RewardRedemption,
    TransactionSource,
    TransactionType,
)
from .store import SERVER_TIMESTAMP, Increment, Precondition, Transaction, where

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .ledger import GoldLedger
    from .progress import ProgressStore
    from .store import DocumentStore
    from .tasks import TaskBoard


class RedemptionWorkflow:
    """Reward catalog reads and the two-phase redemption state machine."""

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

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Rewards
    # ══════════════════════════════════════════════════════════

    async def create_reward(self, owner_id: str, title: str, cost_gold: int, required_level: int = 1) -> Reward:
        if cost_gold < 0:
            raise ValidationError("Reward cost cannot be negative")
        reward_id = await self._store.add(REWARDS, {
            "ownerId": owner_id,
            "title": title,
            "costGold": cost_gold,
            "requiredLevel": max(1, required_level),
            "active": True,
            "createdAt": SERVER_TIMESTAMP,
        })
        return await self.get_reward(reward_id)

    async def get_reward(self, reward_id: str) -> Reward:
        snap = await self._store.get(REWARDS, reward_id)
        if not snap.exists:
            raise NotFound(REWARDS, reward_id)
        return Reward.from_doc(reward_id, snap.to_dict())

    # ══════════════════════════════════════════════════════════
    #  Request
    # ══════════════════════════════════════════════════════════

    async def request_redemption(
        self, user_id: str, reward_id: str, now: datetime | None = None,
    ) -> RewardRedemption:
        """Open a pending redemption and debit its cost in one commit."""
        if not user_id:
            raise ValidationError("No target child selected for this redemption")
        cfg = self._config.redemption
        today = day_of(now or now_utc(), self._config.calendar.tz)

        def _sync(txn: Transaction) -> RewardRedemption:
            snap = txn.get(REWARDS, reward_id)
            if not snap.exists:
                raise NotFound(REWARDS, reward_id)
            reward = Reward.from_doc(reward_id, snap.to_dict())
            if not reward.active:
                raise ValidationError(f"Reward '{reward.title}' is not available")

            progress = self._progress.ensure_in_txn(txn, user_id)
            level = int(progress.get("level", 1))
            if cfg.enforce_level and level < reward.required_level:
                raise ValidationError(
                    f"Reward '{reward.title}' requires level {reward.required_level} (current {level})"
                )
            if cfg.min_daily_tasks:
                done_today = len(self._tasks.completions_in_txn(txn, user_id, today))
                if done_today < cfg.min_daily_tasks:
                    raise ValidationError(
                        f"Complete at least {cfg.min_daily_tasks} tasks today before redeeming "
                        f"({done_today} so far)"
                    )
            pending = txn.query(REDEMPTIONS, [
                where("userId", "==", user_id),
                where("rewardId", "==", reward_id),
                where("status", "==", RedemptionStatus.PENDING.value),
            ], limit=1)
            if pending:
                raise ValidationError(f"A redemption of '{reward.title}' is already pending")
            available = int(progress.get("availableGold", 0))
            if available < reward.cost_gold:
                raise InsufficientFunds(user_id, reward.cost_gold, available)

            redemption_id = txn.new_id()
            doc = {
                "userId": user_id,
                "rewardId": reward_id,
                "rewardTitle": reward.title,
                "costGold": reward.cost_gold,
                "status": RedemptionStatus.PENDING.value,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
            txn.create(REDEMPTIONS, redemption_id, doc)
            if reward.cost_gold > 0:
                self._ledger.apply_entry(
                    txn, user_id, -reward.cost_gold,
                    TransactionType.SPENT, TransactionSource.REWARD_REDEMPTION,
                    f"Resgate: {reward.title}",
                    related_id=reward_id,
                    related_title=reward.title,
                    metadata={"redemptionId": redemption_id},
                    tx_id=dedup_key(user_id, REDEMPTIONS, redemption_id, "spent"),
                )
            return RewardRedemption.from_doc(redemption_id, txn.get(REDEMPTIONS, redemption_id).to_dict())

        redemption = await self._store.run_transaction(_sync)
        self._logger.info(
            "%s requested '%s' for %d Gold (%s)",
            user_id, redemption.reward_title, redemption.cost_gold, redemption.id,
        )
        return redemption

    # ══════════════════════════════════════════════════════════
    #  Resolve
    # ══════════════════════════════════════════════════════════

    async def resolve_redemption(self, redemption_id: str, approved: bool, approved_by: str) -> RewardRedemption:
        """Approve or reject a pending redemption. Terminal ones raise NotPending."""

        def _sync(txn: Transaction) -> RewardRedemption:
            snap = txn.get(REDEMPTIONS, redemption_id)
            if not snap.exists:
                raise NotFound(REDEMPTIONS, redemption_id)
            redemption = RewardRedemption.from_doc(redemption_id, snap.to_dict())
            match redemption.status:
                case RedemptionStatus.PENDING:
                    pass
                case RedemptionStatus.APPROVED | RedemptionStatus.REJECTED:
                    raise NotPending(redemption_id, redemption.status.value)
                case _:
                    raise ValueError(f"Unhandled redemption status: {redemption.status!r}")

            target = RedemptionStatus.APPROVED if approved else RedemptionStatus.REJECTED
            txn.update(REDEMPTIONS, redemption_id, {
                "status": target.value,
                "approvedBy": approved_by,
                "resolvedAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }, precondition=Precondition(equals={"status": RedemptionStatus.PENDING.value}))

            match target:
                case RedemptionStatus.APPROVED:
                    txn.update(PROGRESS, redemption.user_id, {
                        "rewardsRedeemed": Increment(1),
                        "updatedAt": SERVER_TIMESTAMP,
                    })
                case RedemptionStatus.REJECTED:
                    if redemption.cost_gold > 0:
                        self._ledger.apply_entry(
                            txn, redemption.user_id, redemption.cost_gold,
                            TransactionType.REFUND, TransactionSource.REDEMPTION_REFUND,
                            f"Reembolso: {redemption.reward_title}",
                            related_id=redemption.reward_id,
                            related_title=redemption.reward_title,
                            metadata={"redemptionId": redemption_id},
                            tx_id=dedup_key(redemption.user_id, REDEMPTIONS, redemption_id, "refund"),
                            created_by=approved_by,
                            reduces_spent=True,
                        )
                case _:
                    raise ValueError(f"Unhandled redemption status: {target!r}")
            return RewardRedemption.from_doc(redemption_id, txn.get(REDEMPTIONS, redemption_id).to_dict())

        redemption = await self._store.run_transaction(_sync)
        self._logger.info(
            "Redemption %s of '%s' for %s %s by %s",
            redemption_id, redemption.reward_title, redemption.user_id,
            redemption.status.value, approved_by,
        )
        return redemption

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    async def get_redemption(self, redemption_id: str) -> RewardRedemption:
        snap = await self._store.get(REDEMPTIONS, redemption_id)
        if not snap.exists:
            raise NotFound(REDEMPTIONS, redemption_id)
        return RewardRedemption.from_doc(redemption_id, snap.to_dict())

    async def list_redemptions(
        self, user_id: str | None = None, status: RedemptionStatus | None = None,
    ) -> list[RewardRedemption]:
        """Newest first; ``user_id=None`` lists every user (admin approval queue)."""
        filters = []
        if user_id is not None:
            filters.append(where("userId", "==", user_id))
        if status is not None:
            filters.append(where("status", "==", RedemptionStatus(status).value))
        snaps = await self._store.query(REDEMPTIONS, filters, order_by=[("createdAt", "desc")])
        return [RewardRedemption.from_doc(s.id, s.to_dict()) for s in snaps]
