"""Persistence and SQLModel definitions for Star Tracker."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator, Optional
from uuid import uuid4

from pydantic import NaiveDatetime
from sqlalchemy import UniqueConstraint
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine

from .config import DATABASE_URL, DEFAULT_REWARD_COST, DEFAULT_WEEKLY_BONUS_STARS
from .models import PenaltyKind, RedemptionStatus, RewardTier


def _new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Child(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    avatar_url: str = ""
    birth_date: Optional[date] = None
    pin: Optional[str] = None
    created_by: Optional[str] = None
    created_at: NaiveDatetime = Field(default_factory=datetime.now)


class ActivityType(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    icon: str = "⭐"
    description: str = ""
    star_level_1: int = 1
    star_level_2: int = 2
    star_level_3: int = 3
    is_active: bool = True
    sort_order: int = 0
    created_at: NaiveDatetime = Field(default_factory=datetime.now)

    def stars_for_level(self, level: int) -> int:
        return (self.star_level_1, self.star_level_2, self.star_level_3)[level - 1]


class PenaltyType(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    description: str = ""
    kind: str = PenaltyKind.PENALTY.value  # penalty|bonus
    star_deduction: int = 1
    icon: str = ""
    is_active: bool = True
    created_at: NaiveDatetime = Field(default_factory=datetime.now)

    @property
    def is_bonus(self) -> bool:
        return self.kind == PenaltyKind.BONUS.value


class Reward(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    description: str = ""
    image_url: str = ""
    star_cost: int = DEFAULT_REWARD_COST
    tier: str = RewardTier.WEEKLY.value  # weekly|monthly|yearly
    is_free_daily: bool = False
    is_weekly_challenge: bool = False
    weekly_bonus_stars: int = DEFAULT_WEEKLY_BONUS_STARS
    is_active: bool = True
    created_at: NaiveDatetime = Field(default_factory=datetime.now)


class DailyEvaluation(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("child_id", "eval_date", name="uq_evaluation_child_day"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    child_id: str = Field(index=True)
    eval_date: date
    notes: str = ""
    total_stars_earned: int = 0
    total_stars_deducted: int = 0
    evaluated_by: Optional[str] = None
    created_at: NaiveDatetime = Field(default_factory=datetime.now)
    updated_at: NaiveDatetime = Field(default_factory=datetime.now)


class EvaluationDetail(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    evaluation_id: str = Field(index=True)
    activity_type_id: str
    star_level: int
    stars_earned: int
    note: str = ""


class EvaluationPenalty(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    evaluation_id: str = Field(index=True)
    penalty_type_id: str
    # Positive for a penalty, negative for a bonus.
    stars_deducted: int
    note: str = ""


class WeeklyChallengeProgress(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("child_id", "reward_id", "week_start", name="uq_progress_child_reward_week"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    child_id: str = Field(index=True)
    reward_id: str
    week_start: date
    day_1: bool = False
    day_2: bool = False
    day_3: bool = False
    day_4: bool = False
    day_5: bool = False
    day_6: bool = False
    day_7: bool = False
    bonus_awarded: bool = False
    created_at: NaiveDatetime = Field(default_factory=datetime.now)

    def day_flags(self) -> tuple[bool, ...]:
        return tuple(bool(getattr(self, day_column(index))) for index in range(1, 8))

    @property
    def days_completed(self) -> int:
        return sum(self.day_flags())

    @property
    def is_complete(self) -> bool:
        return all(self.day_flags())


class RewardRedemption(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("child_id", "reward_id", "claim_date", name="uq_free_daily_claim"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    child_id: str = Field(index=True)
    reward_id: str
    stars_spent: int = 0
    status: str = RedemptionStatus.PENDING.value  # pending|approved|rejected
    # Only set for free-daily rewards; NULLs never collide in the unique index.
    claim_date: Optional[date] = None
    redeemed_at: NaiveDatetime = Field(default_factory=datetime.now)
    approved_at: Optional[NaiveDatetime] = None


class StarTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    child_id: str = Field(index=True)
    type: str  # earn|penalty|redeem|reset
    amount: int
    description: str = ""
    reference_id: Optional[str] = Field(default=None, index=True)
    created_at: NaiveDatetime = Field(default_factory=datetime.now)


def day_column(index: int) -> str:
    """Return the progress column for ``index`` (Mon=1 … Sun=7)."""

    if not 1 <= index <= 7:
        raise ValueError(f"Day index must be between 1 and 7, got {index}.")
    return f"day_{index}"


# ---------------------------------------------------------------------------
# Engine & sessions
# ---------------------------------------------------------------------------
def build_engine(url: str = DATABASE_URL, *, echo: bool = False) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=echo, connect_args=connect_args)


def create_db_and_tables(target: Engine) -> None:
    SQLModel.metadata.create_all(target)


@contextmanager
def session_scope(target: Engine) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on any error."""

    session = Session(target, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


engine = build_engine()


__all__ = [
    "engine",
    "Child",
    "ActivityType",
    "PenaltyType",
    "Reward",
    "DailyEvaluation",
    "EvaluationDetail",
    "EvaluationPenalty",
    "WeeklyChallengeProgress",
    "RewardRedemption",
    "StarTransaction",
    "day_column",
    "build_engine",
    "create_db_and_tables",
    "session_scope",
]
