"""Custom exception hierarchy for the Star Tracker package."""

from __future__ import annotations


class StarTrackerError(Exception):
    """Base class for all Star Tracker specific errors."""

    code = "error"


class ValidationError(StarTrackerError):
    """Raised when a request is malformed or violates a catalog rule."""

    code = "validation_error"


class NotFoundError(StarTrackerError):
    """Raised when a referenced record does not exist."""

    code = "not_found"


class ChildNotFoundError(NotFoundError):
    """Raised when a child lookup fails."""


class RewardNotFoundError(NotFoundError):
    """Raised when a reward lookup fails."""


class RedemptionNotFoundError(NotFoundError):
    """Raised when a redemption lookup fails."""


class DuplicateActionError(StarTrackerError):
    """Raised when an action may only happen once per day and already did."""

    code = "duplicate_action"


class InsufficientStarsError(StarTrackerError):
    """Raised when a redemption costs more stars than the child holds."""

    code = "insufficient_stars"

    def __init__(self, required: int, balance: int) -> None:
        self.required = required
        self.balance = balance
        self.shortfall = required - balance
        super().__init__(
            f"Not enough stars: the reward costs {required} and the balance is {balance} "
            f"({self.shortfall} short)."
        )


class PermissionDeniedError(StarTrackerError):
    """Raised when the acting user may not perform an operation."""

    code = "permission_denied"


class StorageError(StarTrackerError):
    """Raised when the database rejects or fails an operation."""

    code = "storage_error"
