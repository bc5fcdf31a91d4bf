"""Error taxonomy for the missions ledger.

Every ledger operation either completes its whole write set or raises one of
these before anything is committed.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""


class ValidationError(LedgerError):
    """Caller input was rejected before any write."""


class InsufficientFunds(ValidationError):
    """A debit asked for more Gold than the user has available."""

    def __init__(self, user_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient Gold for {user_id}: requested {requested}, available {available}"
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class RateLimited(ValidationError):
    """An action was attempted again before its cooldown elapsed."""

    def __init__(self, message: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class NotFound(LedgerError):
    """A required document does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class NotPending(LedgerError):
    """A redemption was resolved after it already reached a terminal state."""

    def __init__(self, redemption_id: str, status: str) -> None:
        super().__init__(f"Redemption {redemption_id} is not pending (status: {status})")
        self.redemption_id = redemption_id
        self.status = status


class IdempotenceViolation(LedgerError):
    """A day that is already settled was submitted for normal settlement."""

    def __init__(self, user_id: str, date: str) -> None:
        super().__init__(f"Day {date} already settled for {user_id}")
        self.user_id = user_id
        self.date = date


class ConcurrencyDrift(LedgerError):
    """Aggregate balance and recomputed balance disagree.

    Reconciliation returns instances as findings; only strict callers raise them.
    """

    def __init__(self, user_id: str, findings: list[str], details: dict[str, Any] | None = None) -> None:
        super().__init__(f"Drift detected for {user_id}: " + "; ".join(findings))
        self.user_id = user_id
        self.findings = findings
        self.details = details or {}


class StoreUnavailable(LedgerError):
    """The persistence layer failed. The original error is chained."""


class PreconditionFailed(StoreUnavailable):
    """A conditional write found the document in an unexpected state."""
