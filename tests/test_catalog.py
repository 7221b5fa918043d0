import pytest
from sqlmodel import select

from startracker.challenges import WeeklyChallengeTracker
from startracker.evaluation import EvaluationEngine
from startracker.exceptions import ChildNotFoundError, NotFoundError, ValidationError
from startracker.ledger import StarLedger
from startracker.models import Rating
from startracker.persistence import (
    DailyEvaluation,
    EvaluationDetail,
    EvaluationPenalty,
    RewardRedemption,
    StarTransaction,
    WeeklyChallengeProgress,
)
from startracker.redemptions import RedemptionWorkflow


def test_catalog_defaults(catalog) -> None:
    activity = catalog.create_activity_type("Homework")
    penalty = catalog.create_penalty_type("Shouting")
    bonus = catalog.create_penalty_type("Kindness", kind="bonus", star_deduction=2)
    reward = catalog.create_reward("Ice cream")

    assert (activity.star_level_1, activity.star_level_2, activity.star_level_3) == (1, 2, 3)
    assert activity.icon == "⭐"
    assert penalty.star_deduction == 1
    assert penalty.is_bonus is False
    assert bonus.is_bonus is True
    assert bonus.icon == "🌟"
    assert reward.star_cost == 10
    assert reward.tier == "weekly"
    assert reward.weekly_bonus_stars == 5


@pytest.mark.parametrize(
    "kwargs",
    [
        {"star_levels": (1, 2)},
        {"star_levels": (1, -2, 3)},
        {"star_levels": (1, 2.5, 3)},
    ],
)
def test_activity_star_levels_are_validated(catalog, kwargs) -> None:
    with pytest.raises(ValidationError):
        catalog.create_activity_type("Homework", **kwargs)


def test_names_kinds_and_tiers_are_validated(catalog) -> None:
    with pytest.raises(ValidationError):
        catalog.create_child("   ")
    with pytest.raises(ValidationError):
        catalog.create_penalty_type("Odd", kind="reward")
    with pytest.raises(ValidationError):
        catalog.create_reward("Trip", tier="daily")
    with pytest.raises(ValidationError):
        catalog.create_reward("Trip", star_cost=-1)


def test_updates_reject_unknown_fields_and_missing_rows(catalog) -> None:
    activity = catalog.create_activity_type("Homework")

    updated = catalog.update_activity_type(activity.id, star_level_3=5, is_active=False)
    assert updated.star_level_3 == 5
    assert catalog.list_activity_types() == []
    assert [row.id for row in catalog.list_activity_types(include_inactive=True)] == [activity.id]

    with pytest.raises(ValidationError):
        catalog.update_activity_type(activity.id, colour="blue")
    with pytest.raises(NotFoundError):
        catalog.update_reward("missing", name="Nope")
    with pytest.raises(ChildNotFoundError):
        catalog.update_child("missing", name="Nope")


def test_rewards_are_listed_by_cost(catalog) -> None:
    catalog.create_reward("Bike", star_cost=200, tier="yearly")
    catalog.create_reward("Sticker", star_cost=0, is_free_daily=True)
    catalog.create_reward("Movie", star_cost=30, tier="monthly")

    assert [reward.name for reward in catalog.list_rewards()] == ["Sticker", "Movie", "Bike"]


def test_delete_penalty_type_removes_evaluation_rows(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava")
    shouting = catalog.create_penalty_type("Shouting", star_deduction=2)
    EvaluationEngine(session, clock=clock).submit_evaluation(ava.id, [], [shouting.id])

    catalog.delete_penalty_type(shouting.id)

    assert session.exec(select(EvaluationPenalty)).all() == []
    with pytest.raises(NotFoundError):
        catalog.get_penalty_type(shouting.id)


def test_delete_reward_removes_progress_and_redemptions(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava")
    reading = catalog.create_reward("Reading", star_cost=0, is_weekly_challenge=True)
    WeeklyChallengeTracker(session, clock=clock).check_in(ava.id, reading.id)
    RedemptionWorkflow(session, clock=clock).redeem(ava.id, reading.id)

    catalog.delete_reward(reading.id)

    assert session.exec(select(WeeklyChallengeProgress)).all() == []
    assert session.exec(select(RewardRedemption)).all() == []


def test_delete_child_removes_everything_recorded(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava", pin="1111")
    ben = catalog.create_child("Ben")
    homework = catalog.create_activity_type("Homework")
    shouting = catalog.create_penalty_type("Shouting")
    engine = EvaluationEngine(session, clock=clock)
    engine.submit_evaluation(ava.id, [Rating(homework.id, 3)], [shouting.id])
    engine.submit_evaluation(ben.id, [Rating(homework.id, 1)], [])

    catalog.delete_child(ava.id)

    assert [child.id for child in catalog.list_children()] == [ben.id]
    assert [row.child_id for row in session.exec(select(DailyEvaluation)).all()] == [ben.id]
    assert len(session.exec(select(EvaluationDetail)).all()) == 1
    assert session.exec(select(EvaluationPenalty)).all() == []
    assert {row.child_id for row in session.exec(select(StarTransaction)).all()} == {ben.id}
    assert StarLedger(session).get_balance(ben.id) == 1
