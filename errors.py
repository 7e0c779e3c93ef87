"""Exception hierarchy for the sync and categorization engine.

Routes in ``main.py`` translate these into HTTP status codes:

    NotFoundError         -> 404
    ConfigurationError    -> 400 (any other ValueError as well)
    SyncFailed            -> 502, cursor left where it was
    DataIntegrityError    -> 500
"""

from typing import Any, Optional


class BudgetSyncError(Exception):
    """Base class for all engine errors."""


class AggregatorError(BudgetSyncError):
    """A call to the aggregator failed (network, rate limit, bad payload)."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SyncFailed(BudgetSyncError):
    """A connection item could not be synced. Its cursor was not advanced."""

    def __init__(self, item_id: int, cursor: Optional[str], message: str) -> None:
        super().__init__(f"Sync failed for connection item {item_id}: {message}")
        self.item_id = item_id
        self.cursor = cursor


class DataIntegrityError(BudgetSyncError):
    """Store returned something inconsistent with what was written."""

    def __init__(
        self,
        message: str,
        *,
        submitted: int = 0,
        returned: int = 0,
        sample: Any = None,
    ) -> None:
        super().__init__(
            f"{message} (submitted={submitted} returned={returned} sample={sample!r})"
        )
        self.submitted = submitted
        self.returned = returned
        self.sample = sample


class ConfigurationError(BudgetSyncError, ValueError):
    """Missing fallback category, malformed month, unreadable category map."""


class IdentifierExhausted(BudgetSyncError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Could not find an unused transaction id after {attempts} batches"
        )
        self.attempts = attempts


class NotFoundError(BudgetSyncError, ValueError):
    pass
