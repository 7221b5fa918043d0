import pytest
from sqlmodel import select

from startracker.challenges import WeeklyChallengeTracker
from startracker.exceptions import DuplicateActionError, RewardNotFoundError, ValidationError
from startracker.ledger import StarLedger
from startracker.persistence import StarTransaction, WeeklyChallengeProgress


@pytest.fixture()
def challenge(catalog):
    ava = catalog.create_child("Ava")
    reading = catalog.create_reward("Read every day", star_cost=0, is_weekly_challenge=True, weekly_bonus_stars=6)
    return ava, reading


def test_first_check_in_creates_progress_for_today(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)

    outcome = tracker.check_in(ava.id, reading.id)

    assert outcome.day_index == 1
    assert outcome.days_completed == 1
    assert outcome.bonus_awarded is False
    progress = session.get(WeeklyChallengeProgress, outcome.progress_id)
    assert progress.week_start.isoformat() == "2024-03-04"
    assert progress.day_flags() == (True, False, False, False, False, False, False)


def test_second_check_in_same_day_is_rejected(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)
    tracker.check_in(ava.id, reading.id)
    clock.advance(hours=8)

    with pytest.raises(DuplicateActionError):
        tracker.check_in(ava.id, reading.id)
    assert len(session.exec(select(WeeklyChallengeProgress)).all()) == 1


def test_days_completed_counts_checked_days(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)
    tracker.check_in(ava.id, reading.id)
    clock.advance(days=2)

    outcome = tracker.check_in(ava.id, reading.id)

    assert outcome.day_index == 3
    assert outcome.days_completed == 2


def test_full_week_pays_bonus_exactly_once(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)
    outcomes = []
    for _ in range(7):
        outcomes.append(tracker.check_in(ava.id, reading.id))
        clock.advance(days=1)

    assert [outcome.bonus_awarded for outcome in outcomes] == [False] * 6 + [True]
    assert outcomes[-1].bonus_stars == 6
    assert outcomes[-1].days_completed == 7
    assert StarLedger(session).get_balance(ava.id) == 6
    progress = session.get(WeeklyChallengeProgress, outcomes[-1].progress_id)
    assert progress.bonus_awarded is True


def test_new_week_starts_a_new_progress_row(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)
    first = tracker.check_in(ava.id, reading.id)
    clock.advance(days=7)

    second = tracker.check_in(ava.id, reading.id)

    assert second.progress_id != first.progress_id
    assert second.days_completed == 1
    assert len(tracker.get_weekly_challenge_progress(ava.id)) == 1


def test_zero_bonus_marks_completion_without_ledger_entry(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava")
    tidy = catalog.create_reward("Tidy room", is_weekly_challenge=True, weekly_bonus_stars=0)
    tracker = WeeklyChallengeTracker(session, clock=clock)
    for _ in range(7):
        outcome = tracker.check_in(ava.id, tidy.id)
        clock.advance(days=1)

    assert outcome.bonus_awarded is True
    assert outcome.bonus_stars == 0
    assert session.exec(select(StarTransaction)).all() == []


def test_check_in_requires_a_weekly_challenge_reward(session, clock, catalog) -> None:
    ava = catalog.create_child("Ava")
    toy = catalog.create_reward("Toy", star_cost=20)
    tracker = WeeklyChallengeTracker(session, clock=clock)

    with pytest.raises(ValidationError):
        tracker.check_in(ava.id, toy.id)
    with pytest.raises(RewardNotFoundError):
        tracker.check_in(ava.id, "missing")


def test_progress_view_includes_reward_and_count(session, clock, challenge) -> None:
    ava, reading = challenge
    tracker = WeeklyChallengeTracker(session, clock=clock)
    tracker.check_in(ava.id, reading.id)

    views = tracker.get_weekly_challenge_progress(ava.id)

    payload = views[0].to_dict()
    assert payload["days_completed"] == 1
    assert payload["day_1"] is True
    assert payload["reward"]["name"] == "Read every day"
