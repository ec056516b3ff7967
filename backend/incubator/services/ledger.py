"""Inventory quantity ledger with conditional, audited mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models
from ..errors import InvalidStateError, InsufficientQuantityError, NotFoundError, ValidationError

# purpose: move stock between available, assigned and consumed balances without overdraw
# inputs: SQLAlchemy session, item ids, positive quantities, acting user
# outputs: LedgerMovement carrying the mutated rows and the InventoryTransaction written
# status: active
# every mutation runs inside its own SAVEPOINT and writes exactly one transaction row

logger = logging.getLogger(__name__)


@dataclass
class LedgerMovement:
    """Rows touched by a single ledger mutation."""

    item: models.InventoryItem
    transaction: models.InventoryTransaction
    assignment: models.InventoryAssignment | None = None
    consumption: models.ConsumptionLog | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer")


def get_item(db: Session, item_id: UUID) -> models.InventoryItem:
    item = db.get(models.InventoryItem, item_id)
    if item is None:
        raise NotFoundError(f"Inventory item {item_id} not found")
    return item


def read_available(db: Session, item_id: UUID) -> int | None:
    return db.execute(
        sa.select(models.InventoryItem.available_quantity).where(models.InventoryItem.id == item_id)
    ).scalar_one_or_none()


def _apply_delta(
    db: Session,
    item_id: UUID,
    *,
    available_delta: int,
    consumed_delta: int = 0,
    total_delta: int = 0,
) -> tuple[int, int]:
    """Conditionally shift balances; returns (previous, new) available quantity."""

    column = models.InventoryItem
    conditions = [column.id == item_id]
    if available_delta < 0:
        conditions.append(column.available_quantity >= -available_delta)
    if consumed_delta < 0:
        conditions.append(column.consumed_quantity >= -consumed_delta)
    values = {column.available_quantity: column.available_quantity + available_delta}
    if consumed_delta:
        values[column.consumed_quantity] = column.consumed_quantity + consumed_delta
    if total_delta:
        values[column.total_quantity] = column.total_quantity + total_delta
    result = db.execute(
        sa.update(column)
        .where(*conditions)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = read_available(db, item_id)
        if current is None:
            raise NotFoundError(f"Inventory item {item_id} not found")
        if consumed_delta < 0 and available_delta >= 0:
            raise InvalidStateError(f"Inventory item {item_id} has less consumed stock than the adjustment")
        raise InsufficientQuantityError(item_id, -available_delta, current)
    new_available = read_available(db, item_id)
    return new_available - available_delta, new_available


def _record_transaction(
    db: Session,
    *,
    item_id: UUID,
    transaction_type: str,
    quantity: int,
    previous: int,
    new: int,
    actor_id: UUID | None,
    reference_type: str | None = None,
    reference_id: UUID | None = None,
    notes: str | None = None,
) -> models.InventoryTransaction:
    transaction = models.InventoryTransaction(
        item_id=item_id,
        transaction_type=transaction_type,
        quantity=quantity,
        previous_quantity=previous,
        new_quantity=new,
        performed_by=actor_id,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
    )
    db.add(transaction)
    return transaction


def _refreshed(db: Session, item_id: UUID) -> models.InventoryItem:
    item = get_item(db, item_id)
    db.refresh(item)
    return item


def reserve_for_assignment(
    db: Session,
    *,
    item_id: UUID,
    team_id: UUID,
    quantity: int,
    actor_id: UUID | None,
    request_item_id: UUID | None = None,
    reference_type: str = "assignment",
    reference_id: UUID | None = None,
    notes: str | None = None,
) -> LedgerMovement:
    """Move stock from available into an active team assignment."""

    _require_positive(quantity)
    with db.begin_nested():
        previous, new = _apply_delta(db, item_id, available_delta=-quantity)
        assignment = models.InventoryAssignment(
            item_id=item_id,
            team_id=team_id,
            request_item_id=request_item_id,
            quantity=quantity,
            assigned_by=actor_id,
            notes=notes,
        )
        db.add(assignment)
        db.flush()
        transaction = _record_transaction(
            db,
            item_id=item_id,
            transaction_type="assign",
            quantity=quantity,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type=reference_type,
            reference_id=reference_id or assignment.id,
            notes=notes,
        )
    logger.info("Assigned %s of item %s to team %s", quantity, item_id, team_id)
    return LedgerMovement(
        item=_refreshed(db, item_id), transaction=transaction, assignment=assignment
    )


def reserve_for_consumption(
    db: Session,
    *,
    item_id: UUID,
    quantity: int,
    actor_id: UUID | None,
    team_id: UUID | None = None,
    request_item_id: UUID | None = None,
    unit: str | None = None,
    distributed_to: str | None = None,
    consumption_type: str | None = None,
    reference_type: str = "consumption",
    reference_id: UUID | None = None,
    notes: str | None = None,
) -> LedgerMovement:
    """Move stock from available into consumed and log the distribution."""

    _require_positive(quantity)
    with db.begin_nested():
        previous, new = _apply_delta(
            db, item_id, available_delta=-quantity, consumed_delta=quantity
        )
        log = models.ConsumptionLog(
            item_id=item_id,
            team_id=team_id,
            request_item_id=request_item_id,
            quantity=quantity,
            unit=unit,
            distributed_by=actor_id,
            distributed_to=distributed_to,
            consumption_type=consumption_type,
            notes=notes,
        )
        db.add(log)
        db.flush()
        transaction = _record_transaction(
            db,
            item_id=item_id,
            transaction_type="consume",
            quantity=quantity,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type=reference_type,
            reference_id=reference_id or log.id,
            notes=notes,
        )
    logger.info("Consumed %s of item %s", quantity, item_id)
    return LedgerMovement(item=_refreshed(db, item_id), transaction=transaction, consumption=log)


def release_assignment(
    db: Session,
    *,
    assignment_id: UUID,
    actor_id: UUID | None,
    notes: str | None = None,
) -> LedgerMovement:
    """Return an active assignment to available stock."""

    assignment = db.get(models.InventoryAssignment, assignment_id)
    if assignment is None:
        raise NotFoundError(f"Assignment {assignment_id} not found")
    with db.begin_nested():
        claimed = db.execute(
            sa.update(models.InventoryAssignment)
            .where(
                models.InventoryAssignment.id == assignment_id,
                models.InventoryAssignment.status == "active",
            )
            .values(status="returned", returned_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise InvalidStateError(f"Assignment {assignment_id} is not active")
        previous, new = _apply_delta(db, assignment.item_id, available_delta=assignment.quantity)
        transaction = _record_transaction(
            db,
            item_id=assignment.item_id,
            transaction_type="return",
            quantity=assignment.quantity,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type="assignment",
            reference_id=assignment.id,
            notes=notes,
        )
    db.refresh(assignment)
    return LedgerMovement(
        item=_refreshed(db, assignment.item_id), transaction=transaction, assignment=assignment
    )


def adjust_consumption(
    db: Session,
    *,
    log_id: UUID,
    quantity: int,
    actor_id: UUID | None,
    notes: str | None = None,
) -> LedgerMovement | None:
    """Change a logged consumption; the difference moves between available and consumed."""

    _require_positive(quantity)
    log = db.get(models.ConsumptionLog, log_id)
    if log is None:
        raise NotFoundError(f"Consumption log {log_id} not found")
    difference = quantity - log.quantity
    if difference == 0:
        return None
    with db.begin_nested():
        previous, new = _apply_delta(
            db, log.item_id, available_delta=-difference, consumed_delta=difference
        )
        log.quantity = quantity
        if notes is not None:
            log.notes = notes
        transaction = _record_transaction(
            db,
            item_id=log.item_id,
            transaction_type="adjust",
            quantity=difference,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type="consumption",
            reference_id=log.id,
            notes=f"Adjusted consumption from {quantity - difference} to {quantity}",
        )
    return LedgerMovement(item=_refreshed(db, log.item_id), transaction=transaction, consumption=log)


def revert_consumption(db: Session, *, log_id: UUID, actor_id: UUID | None) -> LedgerMovement:
    """Delete a consumption log and return its quantity to available stock."""

    log = db.get(models.ConsumptionLog, log_id)
    if log is None:
        raise NotFoundError(f"Consumption log {log_id} not found")
    item_id = log.item_id
    with db.begin_nested():
        previous, new = _apply_delta(
            db, item_id, available_delta=log.quantity, consumed_delta=-log.quantity
        )
        transaction = _record_transaction(
            db,
            item_id=item_id,
            transaction_type="adjust",
            quantity=log.quantity,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type="consumption",
            reference_id=log.id,
            notes="Consumption log deleted",
        )
        db.delete(log)
    return LedgerMovement(item=_refreshed(db, item_id), transaction=transaction)


def receive_stock(
    db: Session,
    *,
    item_id: UUID,
    quantity: int,
    actor_id: UUID | None,
    notes: str | None = None,
) -> LedgerMovement:
    """Add newly received units to both total and available stock."""

    _require_positive(quantity)
    with db.begin_nested():
        previous, new = _apply_delta(
            db, item_id, available_delta=quantity, total_delta=quantity
        )
        transaction = _record_transaction(
            db,
            item_id=item_id,
            transaction_type="restock",
            quantity=quantity,
            previous=previous,
            new=new,
            actor_id=actor_id,
            reference_type="restock",
            notes=notes,
        )
    return LedgerMovement(item=_refreshed(db, item_id), transaction=transaction)


def active_assigned_quantity(db: Session, item_id: UUID) -> int:
    return (
        db.query(sa.func.coalesce(sa.func.sum(models.InventoryAssignment.quantity), 0))
        .filter(
            models.InventoryAssignment.item_id == item_id,
            models.InventoryAssignment.status == "active",
        )
        .scalar()
    )


def balance_holds(db: Session, item: models.InventoryItem) -> bool:
    """Check total == available + consumed + actively assigned for an item."""

    db.refresh(item)
    assigned = active_assigned_quantity(db, item.id)
    return item.total_quantity == item.available_quantity + item.consumed_quantity + assigned


def list_transactions(db: Session, item_id: UUID) -> list[models.InventoryTransaction]:
    get_item(db, item_id)
    return (
        db.query(models.InventoryTransaction)
        .filter(models.InventoryTransaction.item_id == item_id)
        .order_by(models.InventoryTransaction.created_at.asc())
        .all()
    )
