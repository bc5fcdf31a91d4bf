"""Document shapes for the missions ledger.

Persisted field names are camelCase; the dataclasses here expose them in
snake_case and convert with ``from_doc`` / ``to_doc``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from .calendar_day import parse_timestamp, to_iso

# Collection names
PROGRESS = "progress"
GOLD_TRANSACTIONS = "goldTransactions"
DAILY_PROGRESS = "dailyProgress"
REDEMPTIONS = "redemptions"
TASKS = "tasks"
REWARDS = "rewards"
TASK_COMPLETIONS = "taskCompletions"
USER_ACHIEVEMENTS = "userAchievements"
PUNISHMENTS = "punishments"
PROGRESS_SNAPSHOTS = "progressSnapshots"
XP_BACKUPS = "xpBackups"


class TransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    BONUS = "bonus"
    PENALTY = "penalty"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionSource(str, Enum):
    TASK_COMPLETION = "task_completion"
    REWARD_REDEMPTION = "reward_redemption"
    DAILY_BONUS = "daily_bonus"
    DAILY_PENALTY = "daily_penalty"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    BIRTHDAY = "birthday"
    QUIZ = "quiz"
    SURPRISE_MISSION = "surprise_mission"
    ACHIEVEMENT = "achievement"
    REDEMPTION_REFUND = "redemption_refund"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        if self is RedemptionStatus.PENDING:
            return False
        if self in (RedemptionStatus.APPROVED, RedemptionStatus.REJECTED):
            return True
        raise ValueError(f"Unhandled redemption status: {self!r}")

    @property
    def counts_as_spent(self) -> bool:
        """Pending and approved redemptions hold Gold; rejected ones were refunded."""
        if self in (RedemptionStatus.PENDING, RedemptionStatus.APPROVED):
            return True
        if self is RedemptionStatus.REJECTED:
            return False
        raise ValueError(f"Unhandled redemption status: {self!r}")


class TaskFrequency(str, Enum):
    DAILY = "daily"
    WEEKDAY = "weekday"
    WEEKEND = "weekend"

    @classmethod
    def parse(cls, value: str | None) -> TaskFrequency:
        # Unknown or missing frequencies behave like daily tasks.
        try:
            return cls(value)
        except ValueError:
            return cls.DAILY

    def applies_on(self, day: date) -> bool:
        weekend = day.weekday() >= 5
        if self is TaskFrequency.DAILY:
            return True
        if self is TaskFrequency.WEEKDAY:
            return not weekend
        if self is TaskFrequency.WEEKEND:
            return weekend
        raise ValueError(f"Unhandled task frequency: {self!r}")


class DeactivationReason(str, Enum):
    TASKS_COMPLETED = "tasks_completed"
    TIME_COMPLETED = "time_completed"
    ADMIN = "admin"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# ═══════════════════════════════════════════════════════════════
#  Progress
# ═══════════════════════════════════════════════════════════════

@dataclass
class ProgressRecord:
    user_id: str
    level: int = 1
    total_xp: int = 0
    available_gold: int = 0
    total_gold_earned: int = 0
    total_gold_spent: int = 0
    streak: int = 0
    longest_streak: int = 0
    rewards_redeemed: int = 0
    total_tasks_completed: int = 0
    ledger_sequence: int = 0
    last_activity_date: str | None = None
    last_daily_summary_processed_date: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELDS = {
        "level": "level",
        "total_xp": "totalXP",
        "available_gold": "availableGold",
        "total_gold_earned": "totalGoldEarned",
        "total_gold_spent": "totalGoldSpent",
        "streak": "streak",
        "longest_streak": "longestStreak",
        "rewards_redeemed": "rewardsRedeemed",
        "total_tasks_completed": "totalTasksCompleted",
        "ledger_sequence": "ledgerSequence",
    }

    @classmethod
    def from_doc(cls, user_id: str, data: dict[str, Any]) -> ProgressRecord:
        known = set(cls._FIELDS.values()) | {
            "userId", "createdAt", "updatedAt", "lastActivityDate", "lastDailySummaryProcessedDate",
        }
        record = cls(
            user_id=data.get("userId", user_id),
            last_activity_date=data.get("lastActivityDate"),
            last_daily_summary_processed_date=data.get("lastDailySummaryProcessedDate"),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            extra={k: v for k, v in data.items() if k not in known},
        )
        for attr, key in cls._FIELDS.items():
            setattr(record, attr, _int(data.get(key, getattr(record, attr))))
        return record

    @staticmethod
    def default_doc(user_id: str, now_iso: str) -> dict[str, Any]:
        """All-zero starting document for a new user."""
        return {
            "userId": user_id,
            "level": 1,
            "totalXP": 0,
            "availableGold": 0,
            "totalGoldEarned": 0,
            "totalGoldSpent": 0,
            "streak": 0,
            "longestStreak": 0,
            "rewardsRedeemed": 0,
            "totalTasksCompleted": 0,
            "ledgerSequence": 0,
            "createdAt": now_iso,
            "updatedAt": now_iso,
        }


# ═══════════════════════════════════════════════════════════════
#  Ledger
# ═══════════════════════════════════════════════════════════════

@dataclass
class GoldTransaction:
    id: str
    user_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    source: TransactionSource
    description: str
    created_at: datetime | None
    sequence: int = 0
    related_id: str | None = None
    related_title: str | None = None
    metadata: dict[str, Any] | None = None
    created_by: str | None = None

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> GoldTransaction:
        return cls(
            id=doc_id,
            user_id=data["userId"],
            type=TransactionType(data["type"]),
            amount=_int(data.get("amount")),
            balance_before=_int(data.get("balanceBefore")),
            balance_after=_int(data.get("balanceAfter")),
            source=TransactionSource(data["source"]),
            description=data.get("description", ""),
            created_at=parse_timestamp(data.get("createdAt")),
            sequence=_int(data.get("sequence")),
            related_id=data.get("relatedId"),
            related_title=data.get("relatedTitle"),
            metadata=data.get("metadata"),
            created_by=data.get("createdBy"),
        )

    def to_doc(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "userId": self.user_id,
            "type": self.type.value,
            "amount": self.amount,
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "source": self.source.value,
            "description": self.description,
            "createdAt": to_iso(self.created_at) if self.created_at else None,
            "sequence": self.sequence,
        }
        optional = {
            "relatedId": self.related_id,
            "relatedTitle": self.related_title,
            "metadata": self.metadata,
            "createdBy": self.created_by,
        }
        doc.update({k: v for k, v in optional.items() if v is not None})
        return doc


# ═══════════════════════════════════════════════════════════════
#  Settlement
# ═══════════════════════════════════════════════════════════════

@dataclass
class DailyProgressRecord:
    user_id: str
    date: str
    tasks_completed: int = 0
    total_tasks_available: int = 0
    xp_earned: int = 0
    gold_earned: int = 0
    gold_penalty: int = 0
    gold_penalty_applied: int = 0
    all_tasks_bonus_gold: int = 0
    summary_processed: bool = False
    settled_at: datetime | None = None
    reprocessed_at: datetime | None = None
    reprocess_count: int = 0

    @staticmethod
    def doc_id(user_id: str, day_key: str) -> str:
        return f"{user_id}_{day_key}"

    @classmethod
    def from_doc(cls, data: dict[str, Any]) -> DailyProgressRecord:
        return cls(
            user_id=data["userId"],
            date=data["date"],
            tasks_completed=_int(data.get("tasksCompleted")),
            total_tasks_available=_int(data.get("totalTasksAvailable")),
            xp_earned=_int(data.get("xpEarned")),
            gold_earned=_int(data.get("goldEarned")),
            gold_penalty=_int(data.get("goldPenalty")),
            gold_penalty_applied=_int(data.get("goldPenaltyApplied")),
            all_tasks_bonus_gold=_int(data.get("allTasksBonusGold")),
            summary_processed=bool(data.get("summaryProcessed", False)),
            settled_at=parse_timestamp(data.get("settledAt")),
            reprocessed_at=parse_timestamp(data.get("reprocessedAt")),
            reprocess_count=_int(data.get("reprocessCount")),
        )


# ═══════════════════════════════════════════════════════════════
#  Catalog & Redemptions
# ═══════════════════════════════════════════════════════════════

@dataclass
class Task:
    id: str
    owner_id: str
    title: str
    xp: int
    gold: int
    frequency: TaskFrequency = TaskFrequency.DAILY
    active: bool = True
    status: str = "pending"
    last_completed_date: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> Task:
        return cls(
            id=doc_id,
            owner_id=data.get("ownerId", ""),
            title=data.get("title", ""),
            xp=_int(data.get("xp")),
            gold=_int(data.get("gold")),
            frequency=TaskFrequency.parse(data.get("frequency")),
            active=bool(data.get("active", True)),
            status=data.get("status", "pending"),
            last_completed_date=data.get("lastCompletedDate"),
            created_at=parse_timestamp(data.get("createdAt")),
        )


@dataclass
class Reward:
    id: str
    owner_id: str
    title: str
    cost_gold: int
    required_level: int = 1
    active: bool = True

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> Reward:
        return cls(
            id=doc_id,
            owner_id=data.get("ownerId", ""),
            title=data.get("title", ""),
            cost_gold=_int(data.get("costGold")),
            required_level=max(1, _int(data.get("requiredLevel", 1))),
            active=bool(data.get("active", True)),
        )


@dataclass
class TaskCompletion:
    id: str
    task_id: str
    user_id: str
    task_title: str
    date: str
    xp_earned: int
    gold_earned: int
    completed_at: datetime | None = None

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> TaskCompletion:
        return cls(
            id=doc_id,
            task_id=data["taskId"],
            user_id=data["userId"],
            task_title=data.get("taskTitle", ""),
            date=data["date"],
            xp_earned=_int(data.get("xpEarned")),
            gold_earned=_int(data.get("goldEarned")),
            completed_at=parse_timestamp(data.get("completedAt")),
        )


@dataclass
class RewardRedemption:
    id: str
    user_id: str
    reward_id: str
    reward_title: str
    cost_gold: int
    status: RedemptionStatus
    created_at: datetime | None = None
    approved_by: str | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> RewardRedemption:
        return cls(
            id=doc_id,
            user_id=data["userId"],
            reward_id=data["rewardId"],
            reward_title=data.get("rewardTitle", ""),
            cost_gold=_int(data.get("costGold")),
            status=RedemptionStatus(data["status"]),
            created_at=parse_timestamp(data.get("createdAt")),
            approved_by=data.get("approvedBy"),
            resolved_at=parse_timestamp(data.get("resolvedAt")),
        )


# ═══════════════════════════════════════════════════════════════
#  Punishment
# ═══════════════════════════════════════════════════════════════

@dataclass
class PunishmentMode:
    id: str
    user_id: str
    is_active: bool
    start_date: datetime
    end_date: datetime
    tasks_completed: int
    tasks_required: int
    reason: str = ""
    last_task_completed_at: datetime | None = None
    deactivated_at: datetime | None = None
    deactivation_reason: DeactivationReason | None = None

    @classmethod
    def from_doc(cls, doc_id: str, data: dict[str, Any]) -> PunishmentMode:
        reason = data.get("deactivationReason")
        return cls(
            id=doc_id,
            user_id=data["userId"],
            is_active=bool(data.get("isActive", False)),
            start_date=parse_timestamp(data["startDate"]),
            end_date=parse_timestamp(data["endDate"]),
            tasks_completed=_int(data.get("tasksCompleted")),
            tasks_required=_int(data.get("tasksRequired")),
            reason=data.get("reason", ""),
            last_task_completed_at=parse_timestamp(data.get("lastTaskCompletedAt")),
            deactivated_at=parse_timestamp(data.get("deactivatedAt")),
            deactivation_reason=DeactivationReason(reason) if reason else None,
        )
