from datetime import datetime

from sqlmodel import Session, select

from startracker.models import RedemptionStatus
from startracker.persistence import Child, RewardRedemption, StarTransaction, session_scope


def test_local_timestamps_round_trip_without_timezone(engine) -> None:
    stamp = datetime(2024, 3, 4, 21, 30, 15)
    with session_scope(engine) as session:
        child = Child(name="Ava", created_at=stamp)
        session.add(child)
        session.flush()
        session.add(StarTransaction(child_id=child.id, type="earn", amount=3, created_at=stamp))
        session.add(
            RewardRedemption(
                child_id=child.id,
                reward_id="sticker",
                status=RedemptionStatus.APPROVED.value,
                redeemed_at=stamp,
                approved_at=stamp,
            )
        )
        child_id = child.id

    with Session(engine) as session:
        stored = session.get(Child, child_id)
        assert stored.created_at == stamp
        assert stored.created_at.tzinfo is None
        redemption = session.exec(select(RewardRedemption)).one()
        assert (redemption.redeemed_at, redemption.approved_at) == (stamp, stamp)
        assert session.exec(select(StarTransaction)).one().created_at == stamp


def test_default_timestamps_are_naive_local_time(engine) -> None:
    with session_scope(engine) as session:
        child = Child(name="Ben")
        session.add(child)
        child_id = child.id

    with Session(engine) as session:
        stored = session.get(Child, child_id)
        assert stored.created_at.tzinfo is None
        assert abs((datetime.now() - stored.created_at).total_seconds()) < 60
