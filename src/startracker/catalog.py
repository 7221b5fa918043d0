"""Catalog and child records administered by parents."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlmodel import Session, select

from .config import (
    DEFAULT_ACTIVITY_ICON,
    DEFAULT_ACTIVITY_STARS,
    DEFAULT_BONUS_ICON,
    DEFAULT_PENALTY_ICON,
    DEFAULT_REWARD_COST,
    DEFAULT_WEEKLY_BONUS_STARS,
)
from .exceptions import ChildNotFoundError, NotFoundError, RewardNotFoundError, ValidationError
from .ledger import StarLedger
from .models import PenaltyKind, RewardTier
from .persistence import (
    ActivityType,
    Child,
    DailyEvaluation,
    EvaluationDetail,
    EvaluationPenalty,
    PenaltyType,
    Reward,
    RewardRedemption,
    WeeklyChallengeProgress,
)

_ACTIVITY_FIELDS = {"name", "icon", "description", "star_level_1", "star_level_2", "star_level_3", "is_active", "sort_order"}
_PENALTY_FIELDS = {"name", "description", "kind", "star_deduction", "icon", "is_active"}
_REWARD_FIELDS = {
    "name",
    "description",
    "image_url",
    "star_cost",
    "tier",
    "is_free_daily",
    "is_weekly_challenge",
    "weekly_bonus_stars",
    "is_active",
}
_CHILD_FIELDS = {"name", "avatar_url", "birth_date", "pin"}


def _require_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("A name is required.")
    return cleaned


def _require_non_negative(label: str, value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{label} must be a whole number.")
    if value < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return value


def _apply(record: Any, changes: Mapping[str, Any], allowed: Iterable[str]) -> None:
    allowed_set = set(allowed)
    unknown = set(changes) - allowed_set
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}.")
    for key, value in changes.items():
        setattr(record, key, value)


class CatalogStore:
    """Read and mutate catalog entries and children inside a caller-owned session."""

    __slots__ = ("_session",)

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------
    def get_child(self, child_id: str) -> Child:
        child = self._session.get(Child, child_id)
        if child is None:
            raise ChildNotFoundError(f"Child '{child_id}' does not exist.")
        return child

    def list_children(self) -> List[Child]:
        return list(self._session.exec(select(Child).order_by(Child.created_at)).all())

    def create_child(
        self,
        name: str,
        *,
        avatar_url: str = "",
        birth_date: Optional[date] = None,
        pin: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Child:
        child = Child(
            name=_require_name(name),
            avatar_url=avatar_url or "",
            birth_date=birth_date,
            pin=(pin or "").strip() or None,
            created_by=created_by,
        )
        self._session.add(child)
        self._session.flush()
        return child

    def update_child(self, child_id: str, **changes: Any) -> Child:
        child = self.get_child(child_id)
        if "name" in changes:
            changes["name"] = _require_name(changes["name"])
        _apply(child, changes, _CHILD_FIELDS)
        self._session.add(child)
        self._session.flush()
        return child

    def delete_child(self, child_id: str) -> None:
        """Delete a child together with everything recorded for it."""

        child = self.get_child(child_id)
        evaluations = self._session.exec(select(DailyEvaluation).where(DailyEvaluation.child_id == child_id)).all()
        for evaluation in evaluations:
            self._delete_evaluation_rows(evaluation.id)
            self._session.delete(evaluation)
        for model in (RewardRedemption, WeeklyChallengeProgress):
            for row in self._session.exec(select(model).where(model.child_id == child_id)).all():
                self._session.delete(row)
        StarLedger(self._session).delete_child_transactions(child_id)
        self._session.delete(child)
        self._session.flush()

    def _delete_evaluation_rows(self, evaluation_id: str) -> None:
        for model in (EvaluationDetail, EvaluationPenalty):
            for row in self._session.exec(select(model).where(model.evaluation_id == evaluation_id)).all():
                self._session.delete(row)

    # ------------------------------------------------------------------
    # Activity types
    # ------------------------------------------------------------------
    def list_activity_types(self, *, include_inactive: bool = False) -> List[ActivityType]:
        query = select(ActivityType)
        if not include_inactive:
            query = query.where(ActivityType.is_active == True)  # noqa: E712
        return list(self._session.exec(query.order_by(ActivityType.sort_order, ActivityType.created_at)).all())

    def get_activity_type(self, activity_type_id: str) -> ActivityType:
        activity = self._session.get(ActivityType, activity_type_id)
        if activity is None:
            raise NotFoundError(f"Activity type '{activity_type_id}' does not exist.")
        return activity

    def activity_types_by_id(self, ids: Iterable[str]) -> Dict[str, ActivityType]:
        wanted = set(ids)
        if not wanted:
            return {}
        rows = self._session.exec(select(ActivityType).where(ActivityType.id.in_(wanted))).all()
        return {row.id: row for row in rows}

    def create_activity_type(
        self,
        name: str,
        *,
        icon: str = "",
        description: str = "",
        star_levels: Optional[Iterable[int]] = None,
        sort_order: int = 0,
    ) -> ActivityType:
        levels = tuple(star_levels) if star_levels is not None else DEFAULT_ACTIVITY_STARS
        if len(levels) != 3:
            raise ValidationError("An activity needs exactly three star levels.")
        level_1, level_2, level_3 = (
            _require_non_negative(f"Star level {index}", value) for index, value in enumerate(levels, start=1)
        )
        activity = ActivityType(
            name=_require_name(name),
            icon=icon or DEFAULT_ACTIVITY_ICON,
            description=description,
            star_level_1=level_1,
            star_level_2=level_2,
            star_level_3=level_3,
            sort_order=sort_order,
        )
        self._session.add(activity)
        self._session.flush()
        return activity

    def update_activity_type(self, activity_type_id: str, **changes: Any) -> ActivityType:
        activity = self.get_activity_type(activity_type_id)
        if "name" in changes:
            changes["name"] = _require_name(changes["name"])
        for key in ("star_level_1", "star_level_2", "star_level_3"):
            if key in changes:
                _require_non_negative(key.replace("_", " ").capitalize(), changes[key])
        _apply(activity, changes, _ACTIVITY_FIELDS)
        self._session.add(activity)
        self._session.flush()
        return activity

    # ------------------------------------------------------------------
    # Penalty and bonus types
    # ------------------------------------------------------------------
    def list_penalty_types(self, *, include_inactive: bool = False) -> List[PenaltyType]:
        query = select(PenaltyType)
        if not include_inactive:
            query = query.where(PenaltyType.is_active == True)  # noqa: E712
        return list(self._session.exec(query.order_by(PenaltyType.created_at)).all())

    def get_penalty_type(self, penalty_type_id: str) -> PenaltyType:
        penalty = self._session.get(PenaltyType, penalty_type_id)
        if penalty is None:
            raise NotFoundError(f"Penalty type '{penalty_type_id}' does not exist.")
        return penalty

    def penalty_types_by_id(self, ids: Iterable[str]) -> Dict[str, PenaltyType]:
        wanted = set(ids)
        if not wanted:
            return {}
        rows = self._session.exec(select(PenaltyType).where(PenaltyType.id.in_(wanted))).all()
        return {row.id: row for row in rows}

    def create_penalty_type(
        self,
        name: str,
        *,
        kind: PenaltyKind | str = PenaltyKind.PENALTY,
        star_deduction: int = 1,
        description: str = "",
        icon: str = "",
    ) -> PenaltyType:
        resolved_kind = self._penalty_kind(kind)
        penalty = PenaltyType(
            name=_require_name(name),
            description=description,
            kind=resolved_kind.value,
            star_deduction=_require_non_negative("Star deduction", star_deduction),
            icon=icon or (DEFAULT_BONUS_ICON if resolved_kind is PenaltyKind.BONUS else DEFAULT_PENALTY_ICON),
        )
        self._session.add(penalty)
        self._session.flush()
        return penalty

    def update_penalty_type(self, penalty_type_id: str, **changes: Any) -> PenaltyType:
        penalty = self.get_penalty_type(penalty_type_id)
        if "name" in changes:
            changes["name"] = _require_name(changes["name"])
        if "kind" in changes:
            changes["kind"] = self._penalty_kind(changes["kind"]).value
        if "star_deduction" in changes:
            _require_non_negative("Star deduction", changes["star_deduction"])
        _apply(penalty, changes, _PENALTY_FIELDS)
        self._session.add(penalty)
        self._session.flush()
        return penalty

    def delete_penalty_type(self, penalty_type_id: str) -> None:
        """Delete a penalty type and the evaluation rows that applied it.

        Evaluation totals and ledger entries already posted are left untouched.
        """

        penalty = self.get_penalty_type(penalty_type_id)
        for row in self._session.exec(
            select(EvaluationPenalty).where(EvaluationPenalty.penalty_type_id == penalty_type_id)
        ).all():
            self._session.delete(row)
        self._session.delete(penalty)
        self._session.flush()

    @staticmethod
    def _penalty_kind(kind: PenaltyKind | str) -> PenaltyKind:
        try:
            return PenaltyKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown penalty kind '{kind}'; use 'penalty' or 'bonus'.") from exc

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------
    def list_rewards(self, *, include_inactive: bool = False) -> List[Reward]:
        query = select(Reward)
        if not include_inactive:
            query = query.where(Reward.is_active == True)  # noqa: E712
        return list(self._session.exec(query.order_by(Reward.star_cost, Reward.created_at)).all())

    def get_reward(self, reward_id: str) -> Reward:
        reward = self._session.get(Reward, reward_id)
        if reward is None:
            raise RewardNotFoundError(f"Reward '{reward_id}' does not exist.")
        return reward

    def rewards_by_id(self, ids: Iterable[str]) -> Dict[str, Reward]:
        wanted = set(ids)
        if not wanted:
            return {}
        rows = self._session.exec(select(Reward).where(Reward.id.in_(wanted))).all()
        return {row.id: row for row in rows}

    def create_reward(
        self,
        name: str,
        *,
        star_cost: int = DEFAULT_REWARD_COST,
        tier: RewardTier | str = RewardTier.WEEKLY,
        description: str = "",
        image_url: str = "",
        is_free_daily: bool = False,
        is_weekly_challenge: bool = False,
        weekly_bonus_stars: int = DEFAULT_WEEKLY_BONUS_STARS,
    ) -> Reward:
        reward = Reward(
            name=_require_name(name),
            description=description,
            image_url=image_url,
            star_cost=_require_non_negative("Star cost", star_cost),
            tier=self._reward_tier(tier).value,
            is_free_daily=bool(is_free_daily),
            is_weekly_challenge=bool(is_weekly_challenge),
            weekly_bonus_stars=_require_non_negative("Weekly bonus", weekly_bonus_stars),
        )
        self._session.add(reward)
        self._session.flush()
        return reward

    def update_reward(self, reward_id: str, **changes: Any) -> Reward:
        reward = self.get_reward(reward_id)
        if "name" in changes:
            changes["name"] = _require_name(changes["name"])
        if "tier" in changes:
            changes["tier"] = self._reward_tier(changes["tier"]).value
        for key, label in (("star_cost", "Star cost"), ("weekly_bonus_stars", "Weekly bonus")):
            if key in changes:
                _require_non_negative(label, changes[key])
        _apply(reward, changes, _REWARD_FIELDS)
        self._session.add(reward)
        self._session.flush()
        return reward

    def delete_reward(self, reward_id: str) -> None:
        """Delete a reward along with its challenge progress and redemptions."""

        reward = self.get_reward(reward_id)
        for model in (WeeklyChallengeProgress, RewardRedemption):
            for row in self._session.exec(select(model).where(model.reward_id == reward_id)).all():
                self._session.delete(row)
        self._session.delete(reward)
        self._session.flush()

    @staticmethod
    def _reward_tier(tier: RewardTier | str) -> RewardTier:
        try:
            return RewardTier(tier)
        except ValueError as exc:
            raise ValidationError(f"Unknown reward tier '{tier}'; use weekly, monthly or yearly.") from exc


__all__ = ["CatalogStore"]
