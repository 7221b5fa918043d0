"""Append-only star ledger.

A child's balance is defined as the sum of its :class:`StarTransaction`
rows. Entries are never edited: an event is reversed by deleting every entry
that references it.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, desc, select

from .config import DEFAULT_TRANSACTION_LIMIT
from .dates import Clock, system_clock
from .models import ChildStarBalance, TransactionType
from .persistence import Child, StarTransaction


class StarLedger:
    """Read and write ledger entries within a caller-owned session."""

    __slots__ = ("_session", "_clock")

    def __init__(self, session: Session, *, clock: Clock = system_clock) -> None:
        self._session = session
        self._clock = clock

    def record_transaction(
        self,
        child_id: str,
        transaction_type: TransactionType,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
    ) -> StarTransaction:
        """Append an entry; the sign of ``amount`` is stored as given."""

        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"Star amounts must be integers, got {type(amount)!r}")
        transaction = StarTransaction(
            child_id=child_id,
            type=TransactionType(transaction_type).value,
            amount=amount,
            description=description,
            reference_id=reference_id,
            created_at=self._clock(),
        )
        self._session.add(transaction)
        self._session.flush()
        return transaction

    def get_balance(self, child_id: str) -> int:
        self._session.flush()
        total = self._session.exec(
            select(func.coalesce(func.sum(StarTransaction.amount), 0)).where(
                StarTransaction.child_id == child_id
            )
        ).one()
        return int(total)

    def delete_transactions_by_reference(self, reference_id: str) -> int:
        """Remove every entry tied to ``reference_id`` and return their summed amount."""

        removed = 0
        for transaction in self.transactions_for_reference(reference_id):
            removed += transaction.amount
            self._session.delete(transaction)
        self._session.flush()
        return removed

    def transactions_for_reference(self, reference_id: str) -> Sequence[StarTransaction]:
        return self._session.exec(
            select(StarTransaction)
            .where(StarTransaction.reference_id == reference_id)
            .order_by(StarTransaction.id)
        ).all()

    def list_transactions(
        self,
        child_id: str,
        limit: int = DEFAULT_TRANSACTION_LIMIT,
        *,
        since: datetime | None = None,
    ) -> List[StarTransaction]:
        if limit < 0:
            raise ValueError("limit must not be negative")
        query = select(StarTransaction).where(StarTransaction.child_id == child_id)
        if since is not None:
            query = query.where(StarTransaction.created_at >= since)
        query = query.order_by(desc(StarTransaction.created_at), desc(StarTransaction.id)).limit(limit)
        return list(self._session.exec(query).all())

    def delete_child_transactions(self, child_id: str) -> None:
        for transaction in self._session.exec(
            select(StarTransaction).where(StarTransaction.child_id == child_id)
        ).all():
            self._session.delete(transaction)
        self._session.flush()

    def get_all_balances(self) -> List[ChildStarBalance]:
        self._session.flush()
        totals = dict(
            self._session.exec(
                select(StarTransaction.child_id, func.sum(StarTransaction.amount)).group_by(
                    StarTransaction.child_id
                )
            ).all()
        )
        children = self._session.exec(select(Child).order_by(Child.created_at)).all()
        return [
            ChildStarBalance(
                child_id=child.id,
                child_name=child.name,
                total_stars=int(totals.get(child.id) or 0),
            )
            for child in children
        ]


__all__ = ["StarLedger"]
