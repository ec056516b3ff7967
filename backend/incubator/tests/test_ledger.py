import uuid

import sqlalchemy as sa
import pytest

from incubator import models
from incubator.errors import InsufficientQuantityError, InvalidStateError, NotFoundError, ValidationError
from incubator.services import ledger
from incubator.tests.conftest import make_item, make_team, make_user


def _transactions(db, item):
    return (
        db.query(models.InventoryTransaction)
        .filter(models.InventoryTransaction.item_id == item.id)
        .all()
    )


def test_assignment_moves_stock_and_writes_one_transaction(db):
    actor = make_user(db, "manager")
    team = make_team(db)
    item = make_item(db, 10)

    movement = ledger.reserve_for_assignment(
        db, item_id=item.id, team_id=team.id, quantity=4, actor_id=actor.id
    )

    assert movement.item.available_quantity == 6
    assert movement.assignment.status == "active"
    assert movement.assignment.quantity == 4
    rows = _transactions(db, item)
    assert len(rows) == 1
    assert rows[0].transaction_type == "assign"
    assert (rows[0].previous_quantity, rows[0].new_quantity) == (10, 6)
    assert ledger.balance_holds(db, item)


def test_consumption_increments_consumed_and_logs(db):
    actor = make_user(db, "manager")
    item = make_item(db, 10, category="Refreshments")

    movement = ledger.reserve_for_consumption(db, item_id=item.id, quantity=3, actor_id=actor.id)

    assert movement.item.available_quantity == 7
    assert movement.item.consumed_quantity == 3
    assert movement.consumption.quantity == 3
    assert movement.transaction.transaction_type == "consume"
    assert ledger.balance_holds(db, item)


def test_overdraw_is_rejected_without_side_effects(db):
    actor = make_user(db, "manager")
    team = make_team(db)
    item = make_item(db, 2)

    with pytest.raises(InsufficientQuantityError) as exc:
        ledger.reserve_for_assignment(
            db, item_id=item.id, team_id=team.id, quantity=3, actor_id=actor.id
        )

    assert exc.value.available == 2
    db.refresh(item)
    assert item.available_quantity == 2
    assert _transactions(db, item) == []
    assert db.query(models.InventoryAssignment).filter_by(item_id=item.id).count() == 0


def test_conditional_write_ignores_stale_reads(db):
    actor = make_user(db, "manager")
    team = make_team(db)
    item = make_item(db, 1)
    assert item.available_quantity == 1

    # another writer drains the last unit after this session loaded the row
    db.execute(
        sa.update(models.InventoryItem)
        .where(models.InventoryItem.id == item.id)
        .values(available_quantity=0, consumed_quantity=1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(InsufficientQuantityError):
        ledger.reserve_for_assignment(
            db, item_id=item.id, team_id=team.id, quantity=1, actor_id=actor.id
        )
    assert ledger.read_available(db, item.id) == 0


def test_non_positive_quantity_is_a_validation_error(db):
    item = make_item(db, 5)
    with pytest.raises(ValidationError):
        ledger.reserve_for_consumption(db, item_id=item.id, quantity=0, actor_id=None)


def test_unknown_item_is_not_found(db):
    with pytest.raises(NotFoundError):
        ledger.receive_stock(db, item_id=uuid.uuid4(), quantity=1, actor_id=None)


def test_release_assignment_restores_available(db):
    actor = make_user(db, "manager")
    team = make_team(db)
    item = make_item(db, 5)
    assigned = ledger.reserve_for_assignment(
        db, item_id=item.id, team_id=team.id, quantity=5, actor_id=actor.id
    )

    movement = ledger.release_assignment(db, assignment_id=assigned.assignment.id, actor_id=actor.id)

    assert movement.item.available_quantity == 5
    assert movement.assignment.status == "returned"
    assert movement.assignment.returned_at is not None
    assert movement.transaction.transaction_type == "return"
    assert ledger.balance_holds(db, item)
    with pytest.raises(InvalidStateError):
        ledger.release_assignment(db, assignment_id=assigned.assignment.id, actor_id=actor.id)


def test_adjust_and_revert_consumption(db):
    actor = make_user(db, "manager")
    item = make_item(db, 10)
    consumed = ledger.reserve_for_consumption(db, item_id=item.id, quantity=4, actor_id=actor.id)

    adjusted = ledger.adjust_consumption(
        db, log_id=consumed.consumption.id, quantity=6, actor_id=actor.id
    )
    assert adjusted.item.available_quantity == 4
    assert adjusted.item.consumed_quantity == 6
    assert adjusted.transaction.transaction_type == "adjust"
    assert adjusted.transaction.quantity == 2

    with pytest.raises(InsufficientQuantityError):
        ledger.adjust_consumption(db, log_id=consumed.consumption.id, quantity=20, actor_id=actor.id)

    reverted = ledger.revert_consumption(db, log_id=consumed.consumption.id, actor_id=actor.id)
    assert reverted.item.available_quantity == 10
    assert reverted.item.consumed_quantity == 0
    assert db.get(models.ConsumptionLog, consumed.consumption.id) is None
    assert len(_transactions(db, item)) == 3
    assert ledger.balance_holds(db, item)


def test_receive_stock_grows_total_and_available(db):
    item = make_item(db, 1)
    movement = ledger.receive_stock(db, item_id=item.id, quantity=9, actor_id=None)
    assert movement.item.total_quantity == 10
    assert movement.item.available_quantity == 10
    assert (movement.transaction.previous_quantity, movement.transaction.new_quantity) == (1, 10)
