"""Reward redemption workflow.

Paid rewards debit the ledger the moment they are requested and wait for a
parent's approval; free daily rewards are approved immediately and never
touch the balance. Rejecting or deleting a redemption refunds it by deleting
the ledger entries that reference it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlmodel import Session, desc, select

from .catalog import CatalogStore
from .dates import Clock, system_clock
from .exceptions import (
    DuplicateActionError,
    InsufficientStarsError,
    RedemptionNotFoundError,
    ValidationError,
)
from .ledger import StarLedger
from .models import RedemptionStatus, TransactionType
from .persistence import Reward, RewardRedemption


@dataclass(slots=True)
class RedemptionView:
    redemption: RewardRedemption
    reward: Optional[Reward]

    def to_dict(self) -> Dict[str, Any]:
        payload = self.redemption.model_dump(mode="json")
        payload["reward"] = self.reward.model_dump(mode="json") if self.reward else None
        return payload


class RedemptionWorkflow:
    __slots__ = ("_session", "_catalog", "_ledger", "_clock")

    def __init__(self, session: Session, *, clock: Clock = system_clock) -> None:
        self._session = session
        self._catalog = CatalogStore(session)
        self._ledger = StarLedger(session, clock=clock)
        self._clock = clock

    def redeem(self, child_id: str, reward_id: str) -> RewardRedemption:
        self._catalog.get_child(child_id)
        reward = self._catalog.get_reward(reward_id)
        if not reward.is_active:
            raise ValidationError(f"Reward '{reward.name}' is no longer available.")

        now = self._clock()
        if reward.is_free_daily:
            today = now.date()
            already = self._session.exec(
                select(RewardRedemption).where(
                    RewardRedemption.child_id == child_id,
                    RewardRedemption.reward_id == reward_id,
                    RewardRedemption.claim_date == today,
                )
            ).first()
            if already is not None:
                raise DuplicateActionError(f"'{reward.name}' was already claimed today; try again tomorrow.")
            redemption = RewardRedemption(
                child_id=child_id,
                reward_id=reward_id,
                stars_spent=0,
                status=RedemptionStatus.APPROVED.value,
                claim_date=today,
                redeemed_at=now,
                approved_at=now,
            )
            self._session.add(redemption)
            self._session.flush()
            return redemption

        balance = self._ledger.get_balance(child_id)
        if balance < reward.star_cost:
            raise InsufficientStarsError(required=reward.star_cost, balance=balance)
        redemption = RewardRedemption(
            child_id=child_id,
            reward_id=reward_id,
            stars_spent=reward.star_cost,
            status=RedemptionStatus.PENDING.value,
            redeemed_at=now,
        )
        self._session.add(redemption)
        self._session.flush()
        if reward.star_cost > 0:
            self._ledger.record_transaction(
                child_id,
                TransactionType.REDEEM,
                -reward.star_cost,
                f"Redeemed: {reward.name}",
                redemption.id,
            )
        return redemption

    def get_redemption(self, redemption_id: str) -> RewardRedemption:
        redemption = self._session.get(RewardRedemption, redemption_id)
        if redemption is None:
            raise RedemptionNotFoundError(f"Redemption '{redemption_id}' does not exist.")
        return redemption

    def approve(self, redemption_id: str) -> RewardRedemption:
        redemption = self.get_redemption(redemption_id)
        if redemption.status == RedemptionStatus.REJECTED.value:
            raise ValidationError("A rejected redemption cannot be approved; ask for a new redemption instead.")
        if redemption.status != RedemptionStatus.APPROVED.value:
            redemption.status = RedemptionStatus.APPROVED.value
            redemption.approved_at = self._clock()
            self._session.add(redemption)
            self._session.flush()
        return redemption

    def reject(
        self,
        redemption_id: str,
        child_id: str,
        *,
        refund_amount: Optional[int] = None,
    ) -> int:
        """Refund and mark the redemption rejected; return the refunded stars."""

        redemption = self._owned_redemption(redemption_id, child_id)
        if redemption.status == RedemptionStatus.REJECTED.value:
            raise DuplicateActionError("This redemption was already rejected and refunded.")
        refunded = self._refund(redemption, refund_amount)
        redemption.status = RedemptionStatus.REJECTED.value
        redemption.approved_at = None
        self._session.add(redemption)
        self._session.flush()
        return refunded

    def delete(
        self,
        redemption_id: str,
        child_id: str,
        *,
        refund_amount: Optional[int] = None,
    ) -> int:
        """Refund and remove the redemption; return the refunded stars."""

        redemption = self._owned_redemption(redemption_id, child_id)
        refunded = self._refund(redemption, refund_amount)
        self._session.delete(redemption)
        self._session.flush()
        return refunded

    def _owned_redemption(self, redemption_id: str, child_id: str) -> RewardRedemption:
        redemption = self.get_redemption(redemption_id)
        if redemption.child_id != child_id:
            raise ValidationError(f"Redemption '{redemption_id}' does not belong to child '{child_id}'.")
        return redemption

    def _refund(self, redemption: RewardRedemption, refund_amount: Optional[int]) -> int:
        debits = self._ledger.transactions_for_reference(redemption.id)
        expected = -sum(transaction.amount for transaction in debits)
        if refund_amount is not None and refund_amount != expected:
            raise ValidationError(
                f"Refund of {refund_amount} does not match the {expected} stars debited for this redemption."
            )
        self._ledger.delete_transactions_by_reference(redemption.id)
        return expected

    def list_redemptions(self, child_id: str) -> List[RedemptionView]:
        rows = self._session.exec(
            select(RewardRedemption)
            .where(RewardRedemption.child_id == child_id)
            .order_by(desc(RewardRedemption.redeemed_at))
        ).all()
        return self._views(rows)

    def pending_redemptions(self) -> List[RedemptionView]:
        rows = self._session.exec(
            select(RewardRedemption)
            .where(RewardRedemption.status == RedemptionStatus.PENDING.value)
            .order_by(RewardRedemption.redeemed_at)
        ).all()
        return self._views(rows)

    def _views(self, rows: List[RewardRedemption]) -> List[RedemptionView]:
        rewards = self._catalog.rewards_by_id(row.reward_id for row in rows)
        return [RedemptionView(redemption=row, reward=rewards.get(row.reward_id)) for row in rows]


__all__ = ["RedemptionView", "RedemptionWorkflow"]
