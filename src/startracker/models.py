"""Domain value objects used by the Star Tracker package."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TransactionType(str, Enum):
    """Enumerates the kinds of star ledger entries."""

    EARN = "earn"
    PENALTY = "penalty"
    REDEEM = "redeem"
    RESET = "reset"


class PenaltyKind(str, Enum):
    """Whether a penalty type subtracts or adds stars."""

    PENALTY = "penalty"
    BONUS = "bonus"


class RewardTier(str, Enum):
    """Informational grouping of rewards in the catalog."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RedemptionStatus(str, Enum):
    """Lifecycle for reward redemptions."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    PARENT = "parent"
    CHILD = "child"


MIN_STAR_LEVEL = 1
MAX_STAR_LEVEL = 3


@dataclass(slots=True, frozen=True)
class ActorContext:
    """Identity of the caller, passed explicitly into every operation."""

    user_id: str
    role: Role
    child_id: Optional[str] = None

    @property
    def is_parent(self) -> bool:
        return self.role is Role.PARENT

    def can_access_child(self, child_id: str) -> bool:
        """Parents see every child; a child only sees itself."""

        if self.is_parent:
            return True
        return self.child_id is not None and self.child_id == child_id


@dataclass(slots=True, frozen=True)
class Rating:
    """A single activity rating submitted with an evaluation."""

    activity_type_id: str
    level: int


@dataclass(slots=True, frozen=True)
class EvaluationOutcome:
    """Totals returned to the caller after an evaluation is stored."""

    evaluation_id: str
    earned: int
    deducted: int
    replaced: bool = False

    @property
    def net(self) -> int:
        return self.earned - self.deducted


@dataclass(slots=True, frozen=True)
class CheckInOutcome:
    """Result of a weekly challenge check-in."""

    progress_id: str
    day_index: int
    days_completed: int
    bonus_awarded: bool = False
    bonus_stars: int = 0


@dataclass(slots=True, frozen=True)
class ChildStarBalance:
    """Snapshot used by the parent dashboard."""

    child_id: str
    child_name: str
    total_stars: int


@dataclass(slots=True)
class OperationResult:
    """Tagged success/error value returned by the :class:`StarTracker` facade."""

    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def success(cls, **data: Any) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str, *, code: str = "error", **data: Any) -> "OperationResult":
        return cls(ok=False, data=data, error=message, code=code)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"success": True, **self.data}
        payload: Dict[str, Any] = {"success": False, "error": self.error, "code": self.code}
        payload.update(self.data)
        return payload


__all__ = [
    "ActorContext",
    "CheckInOutcome",
    "ChildStarBalance",
    "EvaluationOutcome",
    "MAX_STAR_LEVEL",
    "MIN_STAR_LEVEL",
    "OperationResult",
    "PenaltyKind",
    "Rating",
    "RedemptionStatus",
    "RewardTier",
    "Role",
    "TransactionType",
]
