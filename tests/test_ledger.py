from datetime import datetime

import pytest

from startracker.ledger import StarLedger
from startracker.models import TransactionType


def test_balance_is_sum_of_signed_entries(session, catalog, clock) -> None:
    ava = catalog.create_child("Ava")
    ledger = StarLedger(session, clock=clock)

    ledger.record_transaction(ava.id, TransactionType.EARN, 7, "Daily evaluation")
    ledger.record_transaction(ava.id, TransactionType.PENALTY, -2, "Penalties")
    ledger.record_transaction(ava.id, TransactionType.REDEEM, -3, "Redeemed: Sticker")

    assert ledger.get_balance(ava.id) == 2
    assert ledger.get_balance("nobody") == 0


def test_amounts_must_be_integers(session, catalog) -> None:
    ava = catalog.create_child("Ava")
    ledger = StarLedger(session)

    with pytest.raises(TypeError):
        ledger.record_transaction(ava.id, TransactionType.EARN, 1.5, "Half a star")  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        ledger.record_transaction(ava.id, TransactionType.EARN, True, "Flag")  # type: ignore[arg-type]
    assert ledger.get_balance(ava.id) == 0


def test_delete_by_reference_only_touches_matching_entries(session, catalog) -> None:
    ava = catalog.create_child("Ava")
    ledger = StarLedger(session)
    ledger.record_transaction(ava.id, TransactionType.EARN, 5, "Daily evaluation", "eval-1")
    ledger.record_transaction(ava.id, TransactionType.PENALTY, -1, "Penalties", "eval-1")
    ledger.record_transaction(ava.id, TransactionType.EARN, 4, "Daily evaluation", "eval-2")

    removed = ledger.delete_transactions_by_reference("eval-1")

    assert removed == 4
    assert ledger.transactions_for_reference("eval-1") == []
    assert ledger.get_balance(ava.id) == 4
    assert ledger.delete_transactions_by_reference("missing") == 0


def test_list_transactions_newest_first_with_limit_and_since(session, catalog, clock) -> None:
    ava = catalog.create_child("Ava")
    ledger = StarLedger(session, clock=clock)
    for amount in (1, 2, 3):
        ledger.record_transaction(ava.id, TransactionType.EARN, amount, f"Entry {amount}")
        clock.advance(hours=1)

    rows = ledger.list_transactions(ava.id, 2)
    assert [row.amount for row in rows] == [3, 2]

    recent = ledger.list_transactions(ava.id, 10, since=datetime(2024, 3, 4, 10, 0))
    assert [row.amount for row in recent] == [3, 2]

    with pytest.raises(ValueError):
        ledger.list_transactions(ava.id, -1)


def test_entries_recorded_in_same_instant_keep_insert_order(session, catalog, clock) -> None:
    ava = catalog.create_child("Ava")
    ledger = StarLedger(session, clock=clock)
    ledger.record_transaction(ava.id, TransactionType.EARN, 5, "First")
    ledger.record_transaction(ava.id, TransactionType.PENALTY, -1, "Second")

    rows = ledger.list_transactions(ava.id)
    assert [row.description for row in rows] == ["Second", "First"]
    assert rows[0].created_at == clock.now


def test_all_balances_include_children_without_entries(session, catalog) -> None:
    ava = catalog.create_child("Ava")
    ben = catalog.create_child("Ben")
    ledger = StarLedger(session)
    ledger.record_transaction(ava.id, TransactionType.EARN, 6, "Daily evaluation")

    balances = {row.child_id: row for row in ledger.get_all_balances()}

    assert balances[ava.id].total_stars == 6
    assert balances[ava.id].child_name == "Ava"
    assert balances[ben.id].total_stars == 0
