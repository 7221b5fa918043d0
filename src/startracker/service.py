"""High level service coordinating the star ledger, evaluations, challenges and redemptions.

Every public method takes an explicit :class:`ActorContext`, runs inside one
database transaction and returns an :class:`OperationResult` instead of
raising, so the web layer only decides how to display the outcome.
"""

from __future__ import annotations

import hmac
from datetime import date
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from .catalog import CatalogStore
from .challenges import WeeklyChallengeTracker
from .config import DEFAULT_HISTORY_LIMIT, DEFAULT_TRANSACTION_LIMIT, LOG_PATH, STRICT_CATALOG
from .dates import Clock, system_clock
from .evaluation import EvaluationEngine
from .exceptions import (
    DuplicateActionError,
    InsufficientStarsError,
    PermissionDeniedError,
    StarTrackerError,
    StorageError,
    ValidationError,
)
from .ledger import StarLedger
from .locks import ChildLocks
from .models import ActorContext, OperationResult, Rating, Role
from .ops import AuditLog, StructuredLogger
from .persistence import Child, create_db_and_tables, session_scope
from .persistence import engine as default_engine
from .redemptions import RedemptionWorkflow

RatingLike = Union[Rating, Mapping[str, Any]]
Work = Callable[[Session], Dict[str, Any]]
Committed = Callable[[Dict[str, Any]], None]


def _child_dict(child: Child) -> Dict[str, Any]:
    payload = child.model_dump(mode="json", exclude={"pin"})
    payload["has_login"] = bool(child.pin)
    return payload


def coerce_ratings(ratings: Iterable[RatingLike]) -> list[Rating]:
    """Accept :class:`Rating` objects or ``{"activity_type_id", "level"}`` mappings."""

    coerced: list[Rating] = []
    for rating in ratings:
        if isinstance(rating, Rating):
            coerced.append(rating)
            continue
        level = rating.get("level", rating.get("star_level"))
        coerced.append(Rating(activity_type_id=str(rating.get("activity_type_id") or ""), level=level))
    return coerced


class StarTracker:
    """Facade exposing every Star Tracker operation to the presentation layer."""

    __slots__ = (
        "_engine",
        "_clock",
        "_strict_catalog",
        "_logger",
        "_audit_log",
        "_locks",
        "_conflict_retries",
    )

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        clock: Clock = system_clock,
        strict_catalog: bool = STRICT_CATALOG,
        logger: StructuredLogger | None = None,
        conflict_retries: int = 1,
        create_tables: bool = True,
    ) -> None:
        self._engine = engine if engine is not None else default_engine
        self._clock = clock
        self._strict_catalog = strict_catalog
        self._logger = logger or StructuredLogger(path=LOG_PATH)
        self._audit_log = AuditLog(self._logger)
        self._locks = ChildLocks()
        self._conflict_retries = conflict_retries
        if create_tables:
            create_db_and_tables(self._engine)

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Execution helper
    # ------------------------------------------------------------------
    def _run(
        self,
        operation: str,
        actor: ActorContext,
        work: Work,
        *,
        child_id: Optional[str] = None,
        parent_only: bool = False,
        serialize: bool = False,
        retry_on_conflict: bool = False,
        conflict_message: Optional[str] = None,
        on_commit: Optional[Committed] = None,
    ) -> OperationResult:
        try:
            self._authorize(actor, child_id=child_id, parent_only=parent_only)
        except PermissionDeniedError as exc:
            return self._fail(operation, actor, str(exc), exc.code)

        if serialize and child_id is not None:
            with self._locks.hold(child_id):
                return self._attempt(operation, actor, work, retry_on_conflict, conflict_message, on_commit)
        return self._attempt(operation, actor, work, retry_on_conflict, conflict_message, on_commit)

    @staticmethod
    def _authorize(actor: ActorContext, *, child_id: Optional[str], parent_only: bool) -> None:
        if parent_only and not actor.is_parent:
            raise PermissionDeniedError("Only a parent can do this.")
        if child_id is not None and not actor.can_access_child(child_id):
            raise PermissionDeniedError("You can only access your own stars.")

    def _attempt(
        self,
        operation: str,
        actor: ActorContext,
        work: Work,
        retry_on_conflict: bool,
        conflict_message: Optional[str],
        on_commit: Optional[Committed],
    ) -> OperationResult:
        attempts = 1 + (self._conflict_retries if retry_on_conflict else 0)
        for attempt in range(1, attempts + 1):
            try:
                with session_scope(self._engine) as session:
                    data = work(session)
            except IntegrityError as exc:
                if attempt < attempts:
                    self._logger.log("conflict_retry", operation=operation, attempt=attempt)
                    continue
                if conflict_message is not None:
                    return self._fail(operation, actor, conflict_message, DuplicateActionError.code)
                return self._storage_failure(operation, actor, exc)
            except InsufficientStarsError as exc:
                return self._fail(
                    operation,
                    actor,
                    str(exc),
                    exc.code,
                    required=exc.required,
                    balance=exc.balance,
                    shortfall=exc.shortfall,
                )
            except StarTrackerError as exc:
                return self._fail(operation, actor, str(exc), exc.code)
            except SQLAlchemyError as exc:
                return self._storage_failure(operation, actor, exc)
            # Only committed work reaches the event log and audit trail.
            if on_commit is not None:
                on_commit(data)
            return OperationResult.success(**data)
        raise AssertionError("unreachable")  # pragma: no cover

    def _fail(self, operation: str, actor: ActorContext, message: str, code: str, **data: Any) -> OperationResult:
        self._logger.log("operation_failed", operation=operation, actor=actor.user_id, code=code, error=message)
        return OperationResult.failure(message, code=code, **data)

    def _storage_failure(self, operation: str, actor: ActorContext, exc: SQLAlchemyError) -> OperationResult:
        detail = (str(getattr(exc, "orig", None) or exc).splitlines() or ["unknown error"])[0]
        self._logger.log("storage_error", operation=operation, actor=actor.user_id, error=detail)
        return OperationResult.failure(f"Storage error while running {operation}: {detail}", code=StorageError.code)

    def _audited(
        self,
        actor: ActorContext,
        action: str,
        target: Optional[str] = None,
        *,
        record_key: Optional[str] = None,
        child_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Committed:
        """Build an ``on_commit`` hook that records ``action`` in the audit trail.

        ``record_key`` names the payload entry whose ``id`` is the target, for
        rows that only get an id inside the transaction.
        """

        def committed(data: Dict[str, Any]) -> None:
            subject = target if record_key is None else data[record_key]["id"]
            self._audit_log.record(actor.user_id, action, subject, child_id=child_id, details=details)

        return committed

    def _engine_for(self, session: Session) -> EvaluationEngine:
        return EvaluationEngine(session, clock=self._clock, strict_catalog=self._strict_catalog)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def get_balance(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            CatalogStore(session).get_child(child_id)
            return {"child_id": child_id, "balance": StarLedger(session).get_balance(child_id)}

        return self._run("get_balance", actor, work, child_id=child_id)

    def get_all_balances(self, actor: ActorContext) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            balances = StarLedger(session).get_all_balances()
            return {
                "balances": [
                    {"child_id": b.child_id, "child_name": b.child_name, "total_stars": b.total_stars}
                    for b in balances
                ]
            }

        return self._run("get_all_balances", actor, work, parent_only=True)

    def get_star_transactions(
        self,
        actor: ActorContext,
        child_id: str,
        limit: int = DEFAULT_TRANSACTION_LIMIT,
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            if limit < 0:
                raise ValidationError("limit must not be negative")
            rows = StarLedger(session).list_transactions(child_id, limit)
            return {"transactions": [row.model_dump(mode="json") for row in rows]}

        return self._run("get_star_transactions", actor, work, child_id=child_id)

    # ------------------------------------------------------------------
    # Daily evaluations
    # ------------------------------------------------------------------
    def submit_evaluation(
        self,
        actor: ActorContext,
        child_id: str,
        ratings: Sequence[RatingLike],
        penalty_ids: Sequence[str] = (),
        notes: str = "",
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            try:
                coerced = coerce_ratings(ratings)
            except (AttributeError, TypeError) as exc:
                raise ValidationError("Ratings must be activity/level pairs.") from exc
            outcome = self._engine_for(session).submit_evaluation(
                child_id,
                coerced,
                list(penalty_ids),
                notes or "",
                evaluated_by=actor.user_id,
            )
            return {
                "evaluation_id": outcome.evaluation_id,
                "earned": outcome.earned,
                "deducted": outcome.deducted,
                "replaced": outcome.replaced,
            }

        def committed(data: Dict[str, Any]) -> None:
            self._logger.log("evaluation_submitted", child_id=child_id, actor=actor.user_id, **data)

        return self._run(
            "submit_evaluation",
            actor,
            work,
            child_id=child_id,
            parent_only=True,
            serialize=True,
            retry_on_conflict=True,
            on_commit=committed,
        )

    def get_today_evaluation(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            view = self._engine_for(session).get_today_evaluation(child_id)
            return {"evaluation": view.to_dict() if view is not None else None}

        return self._run("get_today_evaluation", actor, work, child_id=child_id)

    def get_evaluation_history(
        self,
        actor: ActorContext,
        child_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            views = self._engine_for(session).get_evaluation_history(child_id, limit)
            return {"evaluations": [view.to_dict() for view in views]}

        return self._run("get_evaluation_history", actor, work, child_id=child_id)

    def get_month_evaluations(self, actor: ActorContext, child_id: str, year: int, month: int) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            views = self._engine_for(session).get_month_evaluations(child_id, year, month)
            return {"year": year, "month": month, "evaluations": [view.to_dict() for view in views]}

        return self._run("get_month_evaluations", actor, work, child_id=child_id)

    # ------------------------------------------------------------------
    # Weekly challenges
    # ------------------------------------------------------------------
    def check_in_weekly_challenge(self, actor: ActorContext, child_id: str, reward_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            outcome = WeeklyChallengeTracker(session, clock=self._clock).check_in(child_id, reward_id)
            if outcome.bonus_awarded:
                return {"bonus_awarded": True, "bonus_stars": outcome.bonus_stars, "days_completed": 7}
            return {"bonus_awarded": False, "days_completed": outcome.days_completed}

        def committed(data: Dict[str, Any]) -> None:
            self._logger.log(
                "weekly_check_in", child_id=child_id, reward_id=reward_id, days_completed=data["days_completed"]
            )
            if data["bonus_awarded"]:
                self._logger.log(
                    "weekly_bonus_awarded", child_id=child_id, reward_id=reward_id, bonus_stars=data["bonus_stars"]
                )

        return self._run(
            "check_in_weekly_challenge",
            actor,
            work,
            child_id=child_id,
            serialize=True,
            retry_on_conflict=True,
            conflict_message="Already checked in today for this challenge.",
            on_commit=committed,
        )

    def get_weekly_challenge_progress(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            views = WeeklyChallengeTracker(session, clock=self._clock).get_weekly_challenge_progress(child_id)
            return {"progress": [view.to_dict() for view in views]}

        return self._run("get_weekly_challenge_progress", actor, work, child_id=child_id)

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------
    def redeem_reward(self, actor: ActorContext, child_id: str, reward_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            redemption = RedemptionWorkflow(session, clock=self._clock).redeem(child_id, reward_id)
            return {
                "redemption_id": redemption.id,
                "status": redemption.status,
                "stars_spent": redemption.stars_spent,
            }

        def committed(data: Dict[str, Any]) -> None:
            self._logger.log("reward_redeemed", child_id=child_id, reward_id=reward_id, **data)

        return self._run(
            "redeem_reward",
            actor,
            work,
            child_id=child_id,
            serialize=True,
            conflict_message="This free reward was already claimed today; try again tomorrow.",
            on_commit=committed,
        )

    def get_redemptions(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            views = RedemptionWorkflow(session, clock=self._clock).list_redemptions(child_id)
            return {"redemptions": [view.to_dict() for view in views]}

        return self._run("get_redemptions", actor, work, child_id=child_id)

    def get_pending_redemptions(self, actor: ActorContext) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            views = RedemptionWorkflow(session, clock=self._clock).pending_redemptions()
            return {"redemptions": [view.to_dict() for view in views]}

        return self._run("get_pending_redemptions", actor, work, parent_only=True)

    def approve_redemption(self, actor: ActorContext, redemption_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            redemption = RedemptionWorkflow(session, clock=self._clock).approve(redemption_id)
            return {"redemption_id": redemption.id, "child_id": redemption.child_id, "status": redemption.status}

        def committed(data: Dict[str, Any]) -> None:
            self._logger.log("redemption_approved", redemption_id=redemption_id, child_id=data["child_id"])
            self._audit_log.record(actor.user_id, "approve_redemption", redemption_id, child_id=data["child_id"])

        return self._run("approve_redemption", actor, work, parent_only=True, on_commit=committed)

    def reject_redemption(
        self,
        actor: ActorContext,
        redemption_id: str,
        child_id: str,
        refund_amount: Optional[int] = None,
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            refunded = RedemptionWorkflow(session, clock=self._clock).reject(
                redemption_id, child_id, refund_amount=refund_amount
            )
            return {"redemption_id": redemption_id, "status": "rejected", "refunded": refunded}

        def committed(data: Dict[str, Any]) -> None:
            refunded = data["refunded"]
            self._logger.log("redemption_rejected", redemption_id=redemption_id, child_id=child_id, refunded=refunded)
            self._audit_log.record(
                actor.user_id, "reject_redemption", redemption_id, child_id=child_id, details={"refunded": refunded}
            )

        return self._run(
            "reject_redemption",
            actor,
            work,
            child_id=child_id,
            parent_only=True,
            serialize=True,
            on_commit=committed,
        )

    def delete_redemption(
        self,
        actor: ActorContext,
        redemption_id: str,
        child_id: str,
        refund_amount: Optional[int] = None,
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            refunded = RedemptionWorkflow(session, clock=self._clock).delete(
                redemption_id, child_id, refund_amount=refund_amount
            )
            return {"redemption_id": redemption_id, "refunded": refunded}

        def committed(data: Dict[str, Any]) -> None:
            refunded = data["refunded"]
            self._logger.log("redemption_deleted", redemption_id=redemption_id, child_id=child_id, refunded=refunded)
            self._audit_log.record(
                actor.user_id, "delete_redemption", redemption_id, child_id=child_id, details={"refunded": refunded}
            )

        return self._run(
            "delete_redemption",
            actor,
            work,
            child_id=child_id,
            parent_only=True,
            serialize=True,
            on_commit=committed,
        )

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------
    def list_children(self, actor: ActorContext) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            children = CatalogStore(session).list_children()
            visible = [child for child in children if actor.can_access_child(child.id)]
            return {"children": [_child_dict(child) for child in visible]}

        return self._run("list_children", actor, work)

    def get_child(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            return {"child": _child_dict(CatalogStore(session).get_child(child_id))}

        return self._run("get_child", actor, work, child_id=child_id)

    def create_child(
        self,
        actor: ActorContext,
        name: str,
        *,
        avatar_url: str = "",
        birth_date: Optional[date] = None,
        pin: Optional[str] = None,
    ) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            child = CatalogStore(session).create_child(
                name, avatar_url=avatar_url, birth_date=birth_date, pin=pin, created_by=actor.user_id
            )
            return {"child": _child_dict(child)}

        def committed(data: Dict[str, Any]) -> None:
            new_id = data["child"]["id"]
            self._audit_log.record(actor.user_id, "create_child", new_id, child_id=new_id)

        return self._run("create_child", actor, work, parent_only=True, on_commit=committed)

    def update_child(self, actor: ActorContext, child_id: str, **changes: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            child = CatalogStore(session).update_child(child_id, **changes)
            return {"child": _child_dict(child)}

        audit = self._audited(actor, "update_child", child_id, child_id=child_id, details={"fields": sorted(changes)})
        return self._run("update_child", actor, work, child_id=child_id, parent_only=True, on_commit=audit)

    def delete_child(self, actor: ActorContext, child_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            CatalogStore(session).delete_child(child_id)
            return {"child_id": child_id}

        result = self._run(
            "delete_child",
            actor,
            work,
            child_id=child_id,
            parent_only=True,
            serialize=True,
            on_commit=self._audited(actor, "delete_child", child_id, child_id=child_id),
        )
        if result.ok:
            self._locks.forget(child_id)
        return result

    def authenticate_child(self, child_id: str, pin: str) -> Optional[ActorContext]:
        """Return a child actor when ``pin`` matches the child's login PIN."""

        with session_scope(self._engine) as session:
            child = session.get(Child, child_id)
            if child is None or not child.pin:
                return None
            if not hmac.compare_digest(child.pin.encode("utf-8"), (pin or "").strip().encode("utf-8")):
                self._logger.log("child_login_failed", child_id=child_id)
                return None
            return ActorContext(user_id=f"child:{child.id}", role=Role.CHILD, child_id=child.id)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def list_activity_types(self, actor: ActorContext, *, include_inactive: bool = False) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            rows = CatalogStore(session).list_activity_types(include_inactive=include_inactive)
            return {"activity_types": [row.model_dump(mode="json") for row in rows]}

        return self._run("list_activity_types", actor, work, parent_only=include_inactive)

    def create_activity_type(self, actor: ActorContext, name: str, **fields: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).create_activity_type(name, **fields)
            return {"activity_type": row.model_dump(mode="json")}

        audit = self._audited(actor, "create_activity_type", record_key="activity_type")
        return self._run("create_activity_type", actor, work, parent_only=True, on_commit=audit)

    def update_activity_type(self, actor: ActorContext, activity_type_id: str, **changes: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).update_activity_type(activity_type_id, **changes)
            return {"activity_type": row.model_dump(mode="json")}

        audit = self._audited(actor, "update_activity_type", activity_type_id, details={"fields": sorted(changes)})
        return self._run("update_activity_type", actor, work, parent_only=True, on_commit=audit)

    def list_penalty_types(self, actor: ActorContext, *, include_inactive: bool = False) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            rows = CatalogStore(session).list_penalty_types(include_inactive=include_inactive)
            return {"penalty_types": [row.model_dump(mode="json") for row in rows]}

        return self._run("list_penalty_types", actor, work, parent_only=include_inactive)

    def create_penalty_type(self, actor: ActorContext, name: str, **fields: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).create_penalty_type(name, **fields)
            return {"penalty_type": row.model_dump(mode="json")}

        def committed(data: Dict[str, Any]) -> None:
            row = data["penalty_type"]
            self._audit_log.record(actor.user_id, "create_penalty_type", row["id"], details={"kind": row["kind"]})

        return self._run("create_penalty_type", actor, work, parent_only=True, on_commit=committed)

    def update_penalty_type(self, actor: ActorContext, penalty_type_id: str, **changes: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).update_penalty_type(penalty_type_id, **changes)
            return {"penalty_type": row.model_dump(mode="json")}

        audit = self._audited(actor, "update_penalty_type", penalty_type_id, details={"fields": sorted(changes)})
        return self._run("update_penalty_type", actor, work, parent_only=True, on_commit=audit)

    def delete_penalty_type(self, actor: ActorContext, penalty_type_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            CatalogStore(session).delete_penalty_type(penalty_type_id)
            return {"penalty_type_id": penalty_type_id}

        audit = self._audited(actor, "delete_penalty_type", penalty_type_id)
        return self._run("delete_penalty_type", actor, work, parent_only=True, on_commit=audit)

    def list_rewards(self, actor: ActorContext, *, include_inactive: bool = False) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            rows = CatalogStore(session).list_rewards(include_inactive=include_inactive)
            return {"rewards": [row.model_dump(mode="json") for row in rows]}

        return self._run("list_rewards", actor, work, parent_only=include_inactive)

    def create_reward(self, actor: ActorContext, name: str, **fields: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).create_reward(name, **fields)
            return {"reward": row.model_dump(mode="json")}

        audit = self._audited(actor, "create_reward", record_key="reward")
        return self._run("create_reward", actor, work, parent_only=True, on_commit=audit)

    def update_reward(self, actor: ActorContext, reward_id: str, **changes: Any) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            row = CatalogStore(session).update_reward(reward_id, **changes)
            return {"reward": row.model_dump(mode="json")}

        audit = self._audited(actor, "update_reward", reward_id, details={"fields": sorted(changes)})
        return self._run("update_reward", actor, work, parent_only=True, on_commit=audit)

    def delete_reward(self, actor: ActorContext, reward_id: str) -> OperationResult:
        def work(session: Session) -> Dict[str, Any]:
            CatalogStore(session).delete_reward(reward_id)
            return {"reward_id": reward_id}

        audit = self._audited(actor, "delete_reward", reward_id)
        return self._run("delete_reward", actor, work, parent_only=True, on_commit=audit)


__all__ = ["StarTracker", "coerce_ratings"]
