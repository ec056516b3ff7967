"""Manual inventory maintenance outside the request workflow."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models, rbac, schemas
from ..errors import NotFoundError, ValidationError
from . import ledger

# purpose: privileged stock operations (items, consumption logs, assignment returns, restocks)
# inputs: SQLAlchemy session, acting user, validated payloads
# outputs: ORM rows or LedgerMovement results, each mutation one atomic ledger unit
# status: active
# depends_on: incubator.services.ledger

logger = logging.getLogger(__name__)


def _require_inventory_manager(actor: models.User) -> None:
    rbac.require_role_capability(actor, rbac.MANAGE_INVENTORY)


def create_item(
    db: Session, actor: models.User, data: schemas.InventoryItemCreate
) -> models.InventoryItem:
    _require_inventory_manager(actor)
    name = (data.name or "").strip()
    if not name:
        raise ValidationError("Item name is required")
    if data.initial_quantity < 0:
        raise ValidationError("Initial quantity cannot be negative")
    item = models.InventoryItem(
        name=name,
        description=data.description,
        category=data.category,
        distribution_unit=data.distribution_unit,
        is_frequently_distributed=data.is_frequently_distributed,
        total_quantity=0,
        available_quantity=0,
        consumed_quantity=0,
    )
    db.add(item)
    db.flush()
    if data.initial_quantity:
        ledger.receive_stock(
            db,
            item_id=item.id,
            quantity=data.initial_quantity,
            actor_id=actor.id,
            notes="Initial stock",
        )
    db.refresh(item)
    return item


def list_items(db: Session, category: str | None = None) -> list[models.InventoryItem]:
    query = db.query(models.InventoryItem)
    if category:
        query = query.filter(models.InventoryItem.category == category)
    return query.order_by(models.InventoryItem.name.asc()).all()


def restock(
    db: Session,
    item_id: UUID,
    actor: models.User,
    quantity: int,
    notes: str | None = None,
) -> ledger.LedgerMovement:
    _require_inventory_manager(actor)
    return ledger.receive_stock(db, item_id=item_id, quantity=quantity, actor_id=actor.id, notes=notes)


def record_consumption(
    db: Session, actor: models.User, data: schemas.ConsumptionLogCreate
) -> ledger.LedgerMovement:
    _require_inventory_manager(actor)
    if data.team_id is not None and db.get(models.Team, data.team_id) is None:
        raise NotFoundError(f"Team {data.team_id} not found")
    item = ledger.get_item(db, data.item_id)
    return ledger.reserve_for_consumption(
        db,
        item_id=item.id,
        quantity=data.quantity,
        actor_id=actor.id,
        team_id=data.team_id,
        unit=data.unit or item.distribution_unit,
        distributed_to=data.distributed_to,
        consumption_type=data.consumption_type or "manual",
        notes=data.notes,
    )


def update_consumption(
    db: Session,
    log_id: UUID,
    actor: models.User,
    quantity: int,
    notes: str | None = None,
) -> models.ConsumptionLog:
    _require_inventory_manager(actor)
    movement = ledger.adjust_consumption(
        db, log_id=log_id, quantity=quantity, actor_id=actor.id, notes=notes
    )
    if movement is None:
        log = db.get(models.ConsumptionLog, log_id)
        if notes is not None:
            log.notes = notes
            db.flush()
        return log
    return movement.consumption


def delete_consumption(db: Session, log_id: UUID, actor: models.User) -> ledger.LedgerMovement:
    _require_inventory_manager(actor)
    movement = ledger.revert_consumption(db, log_id=log_id, actor_id=actor.id)
    logger.info("Consumption log %s reverted by %s", log_id, actor.id)
    return movement


def list_consumption_logs(
    db: Session,
    *,
    item_id: UUID | None = None,
    team_id: UUID | None = None,
) -> list[models.ConsumptionLog]:
    query = db.query(models.ConsumptionLog)
    if item_id:
        query = query.filter(models.ConsumptionLog.item_id == item_id)
    if team_id:
        query = query.filter(models.ConsumptionLog.team_id == team_id)
    return query.order_by(models.ConsumptionLog.consumed_at.desc()).all()


def release_assignment(
    db: Session,
    assignment_id: UUID,
    actor: models.User,
    notes: str | None = None,
) -> ledger.LedgerMovement:
    _require_inventory_manager(actor)
    return ledger.release_assignment(
        db, assignment_id=assignment_id, actor_id=actor.id, notes=notes
    )


def list_assignments(
    db: Session,
    *,
    item_id: UUID | None = None,
    team_id: UUID | None = None,
    status: str | None = None,
) -> list[models.InventoryAssignment]:
    query = db.query(models.InventoryAssignment)
    if item_id:
        query = query.filter(models.InventoryAssignment.item_id == item_id)
    if team_id:
        query = query.filter(models.InventoryAssignment.team_id == team_id)
    if status:
        query = query.filter(models.InventoryAssignment.status == status)
    return query.order_by(models.InventoryAssignment.assigned_at.desc()).all()
