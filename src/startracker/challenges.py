"""Weekly challenge check-ins.

Each (child, reward, week) pair owns one progress row with a flag per
weekday. Flags and the bonus marker only ever move from false to true and
are written with conditional updates, so a repeated request cannot credit a
day or the completion bonus twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .catalog import CatalogStore
from .dates import Clock, day_index_for, system_clock, week_start_for
from .exceptions import DuplicateActionError, ValidationError
from .ledger import StarLedger
from .models import CheckInOutcome, TransactionType
from .persistence import Reward, WeeklyChallengeProgress, day_column


@dataclass(slots=True)
class ChallengeProgressView:
    progress: WeeklyChallengeProgress
    reward: Optional[Reward]

    def to_dict(self) -> Dict[str, Any]:
        payload = self.progress.model_dump(mode="json")
        payload["days_completed"] = self.progress.days_completed
        payload["reward"] = self.reward.model_dump(mode="json") if self.reward else None
        return payload


class WeeklyChallengeTracker:
    """Record check-ins and pay the one-time completion bonus."""

    __slots__ = ("_session", "_catalog", "_ledger", "_clock")

    def __init__(self, session: Session, *, clock: Clock = system_clock) -> None:
        self._session = session
        self._catalog = CatalogStore(session)
        self._ledger = StarLedger(session, clock=clock)
        self._clock = clock

    def check_in(self, child_id: str, reward_id: str) -> CheckInOutcome:
        self._catalog.get_child(child_id)
        reward = self._catalog.get_reward(reward_id)
        if not reward.is_weekly_challenge:
            raise ValidationError(f"Reward '{reward.name}' is not a weekly challenge.")

        now = self._clock()
        today = now.date()
        week_start = week_start_for(today)
        day_index = day_index_for(today)
        column = day_column(day_index)

        progress = self._find_progress(child_id, reward_id, week_start)
        if progress is None:
            progress = WeeklyChallengeProgress(
                child_id=child_id,
                reward_id=reward_id,
                week_start=week_start,
                created_at=now,
                **{column: True},
            )
            self._session.add(progress)
            self._session.flush()
        else:
            if getattr(progress, column):
                raise DuplicateActionError("Already checked in today for this challenge.")
            if not self._set_flag(progress.id, column):
                raise DuplicateActionError("Already checked in today for this challenge.")
            self._session.refresh(progress)

        if progress.is_complete and not progress.bonus_awarded:
            if self._set_flag(progress.id, "bonus_awarded"):
                bonus = reward.weekly_bonus_stars
                if bonus > 0:
                    self._ledger.record_transaction(
                        child_id,
                        TransactionType.EARN,
                        bonus,
                        f"Weekly challenge complete: {reward.name}",
                        progress.id,
                    )
                self._session.refresh(progress)
                return CheckInOutcome(
                    progress_id=progress.id,
                    day_index=day_index,
                    days_completed=progress.days_completed,
                    bonus_awarded=True,
                    bonus_stars=bonus,
                )

        return CheckInOutcome(
            progress_id=progress.id,
            day_index=day_index,
            days_completed=progress.days_completed,
        )

    def _set_flag(self, progress_id: str, column: str) -> bool:
        """Flip ``column`` from false to true; return ``False`` if it was already set."""

        self._session.flush()
        result = self._session.connection().execute(
            update(WeeklyChallengeProgress)
            .where(
                WeeklyChallengeProgress.id == progress_id,
                getattr(WeeklyChallengeProgress, column) == False,  # noqa: E712
            )
            .values({column: True})
        )
        return result.rowcount == 1

    def _find_progress(self, child_id: str, reward_id: str, week_start) -> Optional[WeeklyChallengeProgress]:
        return self._session.exec(
            select(WeeklyChallengeProgress).where(
                WeeklyChallengeProgress.child_id == child_id,
                WeeklyChallengeProgress.reward_id == reward_id,
                WeeklyChallengeProgress.week_start == week_start,
            )
        ).first()

    def get_weekly_challenge_progress(self, child_id: str) -> List[ChallengeProgressView]:
        week_start = week_start_for(self._clock().date())
        rows = self._session.exec(
            select(WeeklyChallengeProgress)
            .where(
                WeeklyChallengeProgress.child_id == child_id,
                WeeklyChallengeProgress.week_start == week_start,
            )
            .order_by(WeeklyChallengeProgress.created_at)
        ).all()
        rewards = self._catalog.rewards_by_id(row.reward_id for row in rows)
        return [ChallengeProgressView(progress=row, reward=rewards.get(row.reward_id)) for row in rows]


__all__ = ["ChallengeProgressView", "WeeklyChallengeTracker"]
