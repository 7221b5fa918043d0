"""Daily evaluation engine.

One :class:`DailyEvaluation` exists per child and local calendar day.
Submitting again on the same day replaces the stored details, penalties and
ledger entries so the net effect always equals the latest submission.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import Session, desc, select

from .catalog import CatalogStore
from .config import DEFAULT_HISTORY_LIMIT, MISSING_PENALTY_STARS
from .dates import Clock, month_bounds, system_clock
from .exceptions import ValidationError
from .ledger import StarLedger
from .models import MAX_STAR_LEVEL, MIN_STAR_LEVEL, EvaluationOutcome, Rating, TransactionType
from .persistence import (
    ActivityType,
    DailyEvaluation,
    EvaluationDetail,
    EvaluationPenalty,
    PenaltyType,
)


@dataclass(slots=True)
class EvaluationView:
    """An evaluation with its detail and penalty rows and their catalog entries."""

    evaluation: DailyEvaluation
    details: List[EvaluationDetail] = field(default_factory=list)
    penalties: List[EvaluationPenalty] = field(default_factory=list)
    activity_types: Dict[str, ActivityType] = field(default_factory=dict)
    penalty_types: Dict[str, PenaltyType] = field(default_factory=dict)

    @property
    def earned(self) -> int:
        """Stars earned recomputed from the stored rows."""

        from_activities = sum(detail.stars_earned for detail in self.details)
        from_bonuses = sum(-row.stars_deducted for row in self.penalties if row.stars_deducted < 0)
        return from_activities + from_bonuses

    @property
    def deducted(self) -> int:
        return sum(row.stars_deducted for row in self.penalties if row.stars_deducted > 0)

    @property
    def net(self) -> int:
        return self.earned - self.deducted

    def to_dict(self) -> Dict[str, Any]:
        payload = self.evaluation.model_dump(mode="json")
        payload["details"] = []
        for detail in self.details:
            row = detail.model_dump(mode="json")
            activity = self.activity_types.get(detail.activity_type_id)
            row["activity_type"] = activity.model_dump(mode="json") if activity else None
            payload["details"].append(row)
        payload["penalties"] = []
        for penalty in self.penalties:
            row = penalty.model_dump(mode="json")
            penalty_type = self.penalty_types.get(penalty.penalty_type_id)
            row["penalty_type"] = penalty_type.model_dump(mode="json") if penalty_type else None
            payload["penalties"].append(row)
        payload["net"] = self.net
        return payload


class EvaluationEngine:
    """Compute, store and read daily evaluations."""

    __slots__ = ("_session", "_catalog", "_ledger", "_clock", "_strict_catalog")

    def __init__(
        self,
        session: Session,
        *,
        clock: Clock = system_clock,
        strict_catalog: bool = False,
    ) -> None:
        self._session = session
        self._catalog = CatalogStore(session)
        self._ledger = StarLedger(session, clock=clock)
        self._clock = clock
        self._strict_catalog = strict_catalog

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit_evaluation(
        self,
        child_id: str,
        ratings: Sequence[Rating],
        penalty_ids: Sequence[str],
        notes: str = "",
        *,
        evaluated_by: Optional[str] = None,
    ) -> EvaluationOutcome:
        self._catalog.get_child(child_id)
        self._validate_ratings(ratings)

        activities = self._catalog.activity_types_by_id(rating.activity_type_id for rating in ratings)
        penalty_types = self._catalog.penalty_types_by_id(penalty_ids)
        self._check_catalog_references(ratings, penalty_ids, activities, penalty_types)

        total_earned = 0
        total_deducted = 0
        details: List[EvaluationDetail] = []
        for rating in ratings:
            activity = activities.get(rating.activity_type_id)
            stars = activity.stars_for_level(rating.level) if activity is not None else rating.level
            total_earned += stars
            details.append(
                EvaluationDetail(
                    evaluation_id="",
                    activity_type_id=rating.activity_type_id,
                    star_level=rating.level,
                    stars_earned=stars,
                )
            )

        penalty_rows: List[EvaluationPenalty] = []
        for penalty_id in penalty_ids:
            penalty = penalty_types.get(penalty_id)
            value = penalty.star_deduction if penalty is not None else MISSING_PENALTY_STARS
            if penalty is not None and penalty.is_bonus:
                total_earned += value
                signed = -value
            else:
                total_deducted += value
                signed = value
            penalty_rows.append(
                EvaluationPenalty(evaluation_id="", penalty_type_id=penalty_id, stars_deducted=signed)
            )

        now = self._clock()
        today = now.date()
        existing = self._find_evaluation(child_id, today)
        replaced = existing is not None
        if existing is not None:
            self._clear_evaluation(existing.id)
            evaluation = existing
            evaluation.notes = notes
            evaluation.total_stars_earned = total_earned
            evaluation.total_stars_deducted = total_deducted
            evaluation.evaluated_by = evaluated_by
            evaluation.updated_at = now
        else:
            evaluation = DailyEvaluation(
                child_id=child_id,
                eval_date=today,
                notes=notes,
                total_stars_earned=total_earned,
                total_stars_deducted=total_deducted,
                evaluated_by=evaluated_by,
                created_at=now,
                updated_at=now,
            )
        self._session.add(evaluation)
        self._session.flush()

        for row in [*details, *penalty_rows]:
            row.evaluation_id = evaluation.id
            self._session.add(row)

        label = today.isoformat()
        if total_earned > 0:
            self._ledger.record_transaction(
                child_id, TransactionType.EARN, total_earned, f"Daily evaluation {label}", evaluation.id
            )
        if total_deducted > 0:
            self._ledger.record_transaction(
                child_id, TransactionType.PENALTY, -total_deducted, f"Penalties {label}", evaluation.id
            )
        self._session.flush()
        return EvaluationOutcome(
            evaluation_id=evaluation.id,
            earned=total_earned,
            deducted=total_deducted,
            replaced=replaced,
        )

    def _validate_ratings(self, ratings: Sequence[Rating]) -> None:
        seen: set[str] = set()
        for rating in ratings:
            if not rating.activity_type_id:
                raise ValidationError("Every rating needs an activity type id.")
            if isinstance(rating.level, bool) or not isinstance(rating.level, int):
                raise ValidationError(f"Rating level for activity '{rating.activity_type_id}' must be a whole number.")
            if not MIN_STAR_LEVEL <= rating.level <= MAX_STAR_LEVEL:
                raise ValidationError(
                    f"Rating level for activity '{rating.activity_type_id}' must be between "
                    f"{MIN_STAR_LEVEL} and {MAX_STAR_LEVEL}, got {rating.level}."
                )
            if rating.activity_type_id in seen:
                raise ValidationError(f"Activity '{rating.activity_type_id}' was rated more than once.")
            seen.add(rating.activity_type_id)

    def _check_catalog_references(
        self,
        ratings: Sequence[Rating],
        penalty_ids: Sequence[str],
        activities: Dict[str, ActivityType],
        penalty_types: Dict[str, PenaltyType],
    ) -> None:
        if not self._strict_catalog:
            return
        missing_activities = sorted({r.activity_type_id for r in ratings} - set(activities))
        if missing_activities:
            raise ValidationError(f"Unknown activity type(s): {', '.join(missing_activities)}.")
        missing_penalties = sorted(set(penalty_ids) - set(penalty_types))
        if missing_penalties:
            raise ValidationError(f"Unknown penalty type(s): {', '.join(missing_penalties)}.")

    def _find_evaluation(self, child_id: str, day: date) -> Optional[DailyEvaluation]:
        return self._session.exec(
            select(DailyEvaluation).where(
                DailyEvaluation.child_id == child_id,
                DailyEvaluation.eval_date == day,
            )
        ).first()

    def _clear_evaluation(self, evaluation_id: str) -> None:
        for model in (EvaluationDetail, EvaluationPenalty):
            for row in self._session.exec(select(model).where(model.evaluation_id == evaluation_id)).all():
                self._session.delete(row)
        self._ledger.delete_transactions_by_reference(evaluation_id)
        self._session.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_today_evaluation(self, child_id: str) -> Optional[EvaluationView]:
        evaluation = self._find_evaluation(child_id, self._clock().date())
        if evaluation is None:
            return None
        return self._views([evaluation])[0]

    def get_evaluation_history(self, child_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[EvaluationView]:
        if limit < 0:
            raise ValidationError("limit must not be negative")
        evaluations = self._session.exec(
            select(DailyEvaluation)
            .where(DailyEvaluation.child_id == child_id)
            .order_by(desc(DailyEvaluation.eval_date))
            .limit(limit)
        ).all()
        return self._views(evaluations)

    def get_month_evaluations(self, child_id: str, year: int, month: int) -> List[EvaluationView]:
        try:
            first, last = month_bounds(year, month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        evaluations = self._session.exec(
            select(DailyEvaluation)
            .where(
                DailyEvaluation.child_id == child_id,
                DailyEvaluation.eval_date >= first,
                DailyEvaluation.eval_date <= last,
            )
            .order_by(DailyEvaluation.eval_date)
        ).all()
        return self._views(evaluations)

    def _views(self, evaluations: Sequence[DailyEvaluation]) -> List[EvaluationView]:
        if not evaluations:
            return []
        ids = [evaluation.id for evaluation in evaluations]
        details = self._session.exec(
            select(EvaluationDetail).where(EvaluationDetail.evaluation_id.in_(ids))
        ).all()
        penalties = self._session.exec(
            select(EvaluationPenalty).where(EvaluationPenalty.evaluation_id.in_(ids))
        ).all()
        activity_types = self._catalog.activity_types_by_id(detail.activity_type_id for detail in details)
        penalty_types = self._catalog.penalty_types_by_id(penalty.penalty_type_id for penalty in penalties)

        views = {
            evaluation.id: EvaluationView(
                evaluation=evaluation,
                activity_types=activity_types,
                penalty_types=penalty_types,
            )
            for evaluation in evaluations
        }
        for detail in details:
            views[detail.evaluation_id].details.append(detail)
        for penalty in penalties:
            views[penalty.evaluation_id].penalties.append(penalty)
        for view in views.values():
            view.details.sort(
                key=lambda row: (
                    activity_types[row.activity_type_id].sort_order if row.activity_type_id in activity_types else 0
                )
            )
        return [views[evaluation.id] for evaluation in evaluations]


__all__ = ["EvaluationEngine", "EvaluationView"]
