"""Star Tracker package for rewarding children's daily behaviour with stars."""

from .catalog import CatalogStore
from .challenges import ChallengeProgressView, WeeklyChallengeTracker
from .evaluation import EvaluationEngine, EvaluationView
from .exceptions import (
    ChildNotFoundError,
    DuplicateActionError,
    InsufficientStarsError,
    NotFoundError,
    PermissionDeniedError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    StarTrackerError,
    StorageError,
    ValidationError,
)
from .ledger import StarLedger
from .models import (
    ActorContext,
    CheckInOutcome,
    ChildStarBalance,
    EvaluationOutcome,
    OperationResult,
    PenaltyKind,
    Rating,
    RedemptionStatus,
    RewardTier,
    Role,
    TransactionType,
)
from .ops import AuditEvent, AuditLog, StructuredLogger
from .redemptions import RedemptionView, RedemptionWorkflow
from .service import StarTracker

__all__ = [
    "ActorContext",
    "AuditEvent",
    "AuditLog",
    "CatalogStore",
    "ChallengeProgressView",
    "CheckInOutcome",
    "ChildNotFoundError",
    "ChildStarBalance",
    "DuplicateActionError",
    "EvaluationEngine",
    "EvaluationOutcome",
    "EvaluationView",
    "InsufficientStarsError",
    "NotFoundError",
    "OperationResult",
    "PenaltyKind",
    "PermissionDeniedError",
    "Rating",
    "RedemptionNotFoundError",
    "RedemptionStatus",
    "RedemptionView",
    "RedemptionWorkflow",
    "RewardNotFoundError",
    "RewardTier",
    "Role",
    "StarLedger",
    "StarTracker",
    "StarTrackerError",
    "StorageError",
    "StructuredLogger",
    "TransactionType",
    "ValidationError",
    "WeeklyChallengeTracker",
]
