import pytest
from sqlmodel import select

from startracker.evaluation import EvaluationEngine
from startracker.exceptions import ChildNotFoundError, ValidationError
from startracker.ledger import StarLedger
from startracker.models import Rating, TransactionType
from startracker.persistence import DailyEvaluation, EvaluationPenalty, StarTransaction


@pytest.fixture()
def household(catalog):
    ava = catalog.create_child("Ava")
    homework = catalog.create_activity_type("Homework", star_levels=(1, 2, 4), sort_order=2)
    chores = catalog.create_activity_type("Chores", sort_order=1)
    shouting = catalog.create_penalty_type("Shouting", star_deduction=2)
    helping = catalog.create_penalty_type("Helped a sibling", kind="bonus", star_deduction=3)
    return {
        "child": ava,
        "homework": homework,
        "chores": chores,
        "shouting": shouting,
        "helping": helping,
    }


def _engine(session, clock, **kwargs) -> EvaluationEngine:
    return EvaluationEngine(session, clock=clock, **kwargs)


def test_submission_scores_ratings_penalties_and_bonuses(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]

    outcome = engine.submit_evaluation(
        child.id,
        [Rating(household["homework"].id, 3), Rating(household["chores"].id, 2)],
        [household["shouting"].id, household["helping"].id],
        "Good day",
        evaluated_by="parent",
    )

    assert outcome.earned == 4 + 2 + 3
    assert outcome.deducted == 2
    assert outcome.replaced is False
    assert StarLedger(session).get_balance(child.id) == 7

    entries = StarLedger(session).transactions_for_reference(outcome.evaluation_id)
    assert [(row.type, row.amount) for row in entries] == [
        (TransactionType.EARN.value, 9),
        (TransactionType.PENALTY.value, -2),
    ]
    stored = session.exec(
        select(EvaluationPenalty).where(EvaluationPenalty.evaluation_id == outcome.evaluation_id)
    ).all()
    assert sorted(row.stars_deducted for row in stored) == [-3, 2]


def test_resubmitting_same_day_replaces_previous_result(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]
    first = engine.submit_evaluation(child.id, [Rating(household["homework"].id, 3)], [household["shouting"].id])
    clock.advance(hours=5)

    second = engine.submit_evaluation(child.id, [Rating(household["chores"].id, 1)], [], "Redo")

    assert second.evaluation_id == first.evaluation_id
    assert second.replaced is True
    assert StarLedger(session).get_balance(child.id) == 1
    evaluations = session.exec(select(DailyEvaluation).where(DailyEvaluation.child_id == child.id)).all()
    assert len(evaluations) == 1
    assert evaluations[0].notes == "Redo"
    assert evaluations[0].total_stars_deducted == 0

    view = engine.get_today_evaluation(child.id)
    assert view is not None
    assert [detail.activity_type_id for detail in view.details] == [household["chores"].id]
    assert view.penalties == []


def test_empty_submission_stores_zero_totals_without_ledger_entries(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]

    outcome = engine.submit_evaluation(child.id, [], [])

    assert (outcome.earned, outcome.deducted) == (0, 0)
    assert engine.get_today_evaluation(child.id) is not None
    assert session.exec(select(StarTransaction)).all() == []


def test_unknown_catalog_entries_fall_back_to_raw_values(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]

    outcome = engine.submit_evaluation(child.id, [Rating("retired-activity", 2)], ["retired-penalty"])

    assert outcome.earned == 2
    assert outcome.deducted == 1
    assert StarLedger(session).get_balance(child.id) == 1


def test_strict_catalog_rejects_unknown_entries(session, clock, household) -> None:
    engine = _engine(session, clock, strict_catalog=True)
    child = household["child"]

    with pytest.raises(ValidationError):
        engine.submit_evaluation(child.id, [Rating("retired-activity", 2)], [])
    with pytest.raises(ValidationError):
        engine.submit_evaluation(child.id, [], ["retired-penalty"])
    assert engine.get_today_evaluation(child.id) is None


def test_zero_valued_catalog_entries_are_not_replaced_by_fallbacks(session, clock, catalog, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]
    free_pass = catalog.create_penalty_type("Warning", star_deduction=0)
    reading = catalog.create_activity_type("Reading", star_levels=(0, 1, 2))

    outcome = engine.submit_evaluation(child.id, [Rating(reading.id, 1)], [free_pass.id])

    assert (outcome.earned, outcome.deducted) == (0, 0)


@pytest.mark.parametrize("level", [0, 4, -1, True, "2"])
def test_rating_levels_are_validated(session, clock, household, level) -> None:
    engine = _engine(session, clock)

    with pytest.raises(ValidationError):
        engine.submit_evaluation(household["child"].id, [Rating(household["homework"].id, level)], [])
    assert session.exec(select(DailyEvaluation)).all() == []


def test_rating_an_activity_twice_is_rejected(session, clock, household) -> None:
    engine = _engine(session, clock)
    homework = household["homework"].id

    with pytest.raises(ValidationError):
        engine.submit_evaluation(household["child"].id, [Rating(homework, 1), Rating(homework, 2)], [])


def test_unknown_child_is_rejected(session, clock, household) -> None:
    with pytest.raises(ChildNotFoundError):
        _engine(session, clock).submit_evaluation("ghost", [], [])


def test_history_and_month_views(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]
    homework = household["homework"].id
    for level in (1, 2, 3):
        engine.submit_evaluation(child.id, [Rating(homework, level)], [])
        clock.advance(days=1)
    clock.advance(days=30)
    engine.submit_evaluation(child.id, [Rating(homework, 1)], [])

    history = engine.get_evaluation_history(child.id, 2)
    assert [view.evaluation.eval_date.isoformat() for view in history] == ["2024-04-06", "2024-03-06"]

    march = engine.get_month_evaluations(child.id, 2024, 3)
    assert [view.earned for view in march] == [1, 2, 4]
    assert engine.get_month_evaluations(child.id, 2024, 2) == []
    with pytest.raises(ValidationError):
        engine.get_month_evaluations(child.id, 2024, 13)
    with pytest.raises(ValidationError):
        engine.get_evaluation_history(child.id, -1)


def test_view_serialises_details_in_activity_order(session, clock, household) -> None:
    engine = _engine(session, clock)
    child = household["child"]
    engine.submit_evaluation(
        child.id,
        [Rating(household["homework"].id, 2), Rating(household["chores"].id, 3)],
        [household["helping"].id],
    )

    payload = engine.get_today_evaluation(child.id).to_dict()

    assert [row["activity_type"]["name"] for row in payload["details"]] == ["Chores", "Homework"]
    assert payload["penalties"][0]["penalty_type"]["kind"] == "bonus"
    assert payload["net"] == 3 + 2 + 3
    assert payload["eval_date"] == "2024-03-04"


def test_worked_example_totals_and_view_recompute(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava")
    activity_a = catalog.create_activity_type("A", star_levels=(1, 5, 8))
    activity_b = catalog.create_activity_type("B", star_levels=(1, 2, 3))
    penalty = catalog.create_penalty_type("Late", star_deduction=2)
    bonus = catalog.create_penalty_type("Kind", kind="bonus", star_deduction=1)
    engine = _engine(session, clock)

    outcome = engine.submit_evaluation(
        ava.id, [Rating(activity_a.id, 2), Rating(activity_b.id, 3)], [penalty.id, bonus.id]
    )

    assert (outcome.earned, outcome.deducted, outcome.net) == (9, 2, 7)
    assert StarLedger(session).get_balance(ava.id) == 7
    view = engine.get_today_evaluation(ava.id)
    assert (view.earned, view.deducted) == (outcome.earned, outcome.deducted)
    assert (view.evaluation.total_stars_earned, view.evaluation.total_stars_deducted) == (9, 2)
    signed_penalties = sum(row.stars_deducted for row in view.penalties)
    assert -signed_penalties == view.net - sum(detail.stars_earned for detail in view.details)
