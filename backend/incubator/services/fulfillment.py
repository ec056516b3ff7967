"""Fulfillment processor turning approved request lines into ledger movements."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .. import audit, models
from ..errors import InsufficientQuantityError
from . import ledger
from .common import append_note, utcnow

# purpose: fulfil every pending line of an approved request with per-item failure isolation
# inputs: SQLAlchemy session, approved MaterialRequest, acting user id
# outputs: ordered ItemOutcome list and the rolled up request status
# status: active
# depends_on: incubator.services.ledger

logger = logging.getLogger(__name__)

CONSUMABLE_CATEGORIES = tuple(
    category.strip().lower()
    for category in os.getenv("CONSUMABLE_CATEGORIES", "Refreshments,Consumables").split(",")
    if category.strip()
)
MAX_RESERVATION_ATTEMPTS = 3

DISTRIBUTED = "distributed"
ASSIGNED = "assigned"
PARTIAL = "partial"
DECLINED = "declined"
SHORTAGE = "shortage"
FAILED = "failed"
FREE_TEXT = "free_text"

FULFILLMENT_OUTCOMES = Counter(
    "fulfillment_outcomes_total",
    "Per-item fulfillment outcomes",
    ["outcome"],
)


@dataclass(slots=True)
class ItemOutcome:
    """What happened to one request line during fulfillment."""

    request_item_id: UUID
    outcome: str
    quantity: int = 0
    detail: str | None = None


def is_consumable(
    request: models.MaterialRequest,
    item: models.RequestItem,
    inventory_item: models.InventoryItem | None,
) -> bool:
    if request.is_consumable_request or item.is_consumable:
        return True
    if inventory_item is None:
        return False
    if inventory_item.is_frequently_distributed:
        return True
    return (inventory_item.category or "").strip().lower() in CONSUMABLE_CATEGORIES


def _fulfil_consumable(
    db: Session,
    request: models.MaterialRequest,
    item: models.RequestItem,
    actor_id: UUID | None,
) -> ItemOutcome:
    try:
        ledger.reserve_for_consumption(
            db,
            item_id=item.inventory_item_id,
            quantity=item.quantity,
            actor_id=actor_id,
            team_id=request.team_id,
            request_item_id=item.id,
            unit=item.unit,
            distributed_to=request.team.name if request.team else None,
            consumption_type="quick_request" if request.requires_quick_approval else "standard_request",
            reference_type="material_request",
            reference_id=request.id,
            notes=f"Distributed for {request.request_number}",
        )
    except InsufficientQuantityError as exc:
        detail = f"Shortage: requested {item.quantity}, available {exc.available}"
        item.notes = append_note(item.notes, detail)
        logger.info("Consumable shortage on %s line %s: %s", request.request_number, item.id, detail)
        return ItemOutcome(item.id, SHORTAGE, 0, detail)
    item.status = "distributed"
    item.approved_quantity = item.quantity
    item.distributed_quantity = item.quantity
    item.distribution_date = utcnow()
    return ItemOutcome(item.id, DISTRIBUTED, item.quantity)


def _fulfil_durable(
    db: Session,
    request: models.MaterialRequest,
    item: models.RequestItem,
    actor_id: UUID | None,
) -> ItemOutcome:
    for _ in range(MAX_RESERVATION_ATTEMPTS):
        available = ledger.read_available(db, item.inventory_item_id) or 0
        if available <= 0:
            detail = f"Declined: no stock available for {item.quantity} requested"
            item.status = "declined"
            item.approved_quantity = 0
            item.notes = append_note(item.notes, detail)
            logger.info("Declined %s line %s for lack of stock", request.request_number, item.id)
            return ItemOutcome(item.id, DECLINED, 0, detail)
        granted = min(available, item.quantity)
        try:
            ledger.reserve_for_assignment(
                db,
                item_id=item.inventory_item_id,
                team_id=request.team_id,
                quantity=granted,
                actor_id=actor_id,
                request_item_id=item.id,
                reference_type="material_request",
                reference_id=request.id,
                notes=f"Assigned for {request.request_number}",
            )
        except InsufficientQuantityError:
            # stock moved between the read and the conditional write
            continue
        item.status = "approved"
        item.approved_quantity = granted
        if granted < item.quantity:
            detail = f"Partial: approved {granted} of {item.quantity} requested"
            item.notes = append_note(item.notes, detail)
            return ItemOutcome(item.id, PARTIAL, granted, detail)
        return ItemOutcome(item.id, ASSIGNED, granted)
    detail = "Shortage: stock changed during every reservation attempt"
    item.notes = append_note(item.notes, detail)
    return ItemOutcome(item.id, SHORTAGE, 0, detail)


def _fulfil_item(
    db: Session,
    request: models.MaterialRequest,
    item: models.RequestItem,
    actor_id: UUID | None,
) -> ItemOutcome:
    if item.inventory_item_id is None:
        item.status = "approved"
        item.approved_quantity = item.quantity
        return ItemOutcome(item.id, FREE_TEXT, item.quantity)
    inventory_item = ledger.get_item(db, item.inventory_item_id)
    if is_consumable(request, item, inventory_item):
        return _fulfil_consumable(db, request, item, actor_id)
    return _fulfil_durable(db, request, item, actor_id)


def process_approved_request(
    db: Session,
    request: models.MaterialRequest,
    actor_id: UUID | None,
) -> list[ItemOutcome]:
    """Fulfil each pending line in its own SAVEPOINT; failures become outcomes."""

    outcomes: list[ItemOutcome] = []
    for item in list(request.items):
        if item.status != "pending":
            continue
        item_id = item.id
        try:
            with db.begin_nested():
                outcome = _fulfil_item(db, request, item, actor_id)
        except Exception as exc:
            logger.exception(
                "Fulfillment failed for %s line %s", request.request_number, item_id
            )
            outcome = ItemOutcome(item_id, FAILED, 0, str(exc))
        FULFILLMENT_OUTCOMES.labels(outcome.outcome).inc()
        outcomes.append(outcome)
    return outcomes


def rollup_status(request: models.MaterialRequest) -> str | None:
    """Aggregate request status once no line remains pending."""

    statuses = [item.status for item in request.items]
    if not statuses or "pending" in statuses:
        return None
    return "partially_approved" if "declined" in statuses else "approved"


def apply_approval(
    db: Session,
    request: models.MaterialRequest,
    *,
    actor_id: UUID | None,
    status: str = "approved",
) -> list[ItemOutcome]:
    """Mark a request approved, fulfil its lines and roll the outcome up."""

    previous = request.status
    now = utcnow()
    request.status = status
    request.approved_by = actor_id
    request.approved_at = now
    if request.reviewed_at is None:
        request.reviewed_by = actor_id
        request.reviewed_at = now
    db.flush()

    outcomes = process_approved_request(db, request, actor_id)
    db.expire(request, ["items"])
    rolled_up = rollup_status(request)
    if rolled_up is not None:
        request.status = rolled_up
    db.flush()

    audit.record_request_history(
        db,
        request.id,
        "fulfillment_processed",
        actor_id,
        old_value={"status": previous},
        new_value={
            "status": request.status,
            "outcomes": [
                {
                    "request_item_id": outcome.request_item_id,
                    "outcome": outcome.outcome,
                    "quantity": outcome.quantity,
                }
                for outcome in outcomes
            ],
        },
    )
    return outcomes
