"""Material request state machine."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session, selectinload

from .. import audit, effects, models, rbac, schemas
from ..errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from . import approvals, fulfillment
from .common import (
    RequestActionResult,
    load_request,
    privileged_emails,
    request_payload,
    status_snapshot,
    user_emails,
    utcnow,
)

# purpose: own request lifecycle and delivery status transitions
# inputs: SQLAlchemy session, acting user, request ids and validated payloads
# outputs: RequestActionResult carrying the request, outbox effects and fulfillment outcomes
# status: active
# depends_on: incubator.services.approvals, incubator.services.fulfillment

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"submitted", "pending_review"}),
    "submitted": frozenset({"pending_review", "approved", "partially_approved", "declined"}),
    "pending_review": frozenset({"approved", "partially_approved", "declined"}),
    "approved": frozenset(
        {"partially_approved", "ordered", "in_transit", "delivered", "completed", "returned"}
    ),
    "partially_approved": frozenset(
        {"approved", "ordered", "in_transit", "delivered", "completed", "returned"}
    ),
    "ordered": frozenset({"in_transit", "delivered", "completed", "returned"}),
    "in_transit": frozenset({"delivered", "completed", "returned"}),
    "delivered": frozenset({"completed", "returned"}),
}
APPROVAL_STATUSES = ("approved", "partially_approved")
NON_CANCELLABLE_STATUSES = ("completed", "delivered", "cancelled")
EDITABLE_STATUSES = ("draft", "submitted")
DELIVERY_ELIGIBLE_STATUSES = (
    "approved",
    "partially_approved",
    "ordered",
    "in_transit",
    "delivered",
    "completed",
)
_EDITABLE_FIELDS = (
    "title",
    "description",
    "priority",
    "urgency_reason",
    "required_by",
    "delivery_address",
    "notes",
    "project_id",
)
_NUMBER_PATTERN = re.compile(r"^REQ-(\d{4})-(\d+)$")


def generate_request_number(db: Session, now: datetime | None = None) -> str:
    """Return the next ``REQ-<year>-<NNNN>`` identifier for the current year."""

    year = (now or utcnow()).year
    prefix = f"REQ-{year}-"
    numbers = (
        db.query(models.MaterialRequest.request_number)
        .filter(models.MaterialRequest.request_number.like(f"{prefix}%"))
        .all()
    )
    latest = 0
    for (number,) in numbers:
        match = _NUMBER_PATTERN.match(number or "")
        if match and int(match.group(1)) == year:
            latest = max(latest, int(match.group(2)))
    return f"{prefix}{latest + 1:04d}"


def _build_items(db: Session, items: Iterable[schemas.RequestItemIn]) -> list[models.RequestItem]:
    built = []
    for position, item in enumerate(items):
        if isinstance(item.quantity, bool) or item.quantity is None or item.quantity <= 0:
            raise ValidationError(f"Item {position + 1} must request a positive quantity")
        name = (item.item_name or "").strip()
        if item.inventory_item_id is not None:
            inventory_item = db.get(models.InventoryItem, item.inventory_item_id)
            if inventory_item is None:
                raise ValidationError(
                    f"Item {position + 1} references unknown inventory item {item.inventory_item_id}"
                )
            name = name or inventory_item.name
        if not name:
            raise ValidationError(f"Item {position + 1} needs a name or an inventory link")
        built.append(
            models.RequestItem(
                position=position,
                inventory_item_id=item.inventory_item_id,
                item_name=name,
                description=item.description,
                quantity=item.quantity,
                unit=item.unit,
                is_consumable=item.is_consumable,
                notes=item.notes,
                status="pending",
            )
        )
    if not built:
        raise ValidationError("A request needs at least one item")
    return built


def _validate_priority(priority: str | None) -> None:
    if priority is not None and priority not in models.REQUEST_PRIORITIES:
        raise ValidationError(
            f"Priority must be one of {', '.join(models.REQUEST_PRIORITIES)}"
        )


def _validate_project(db: Session, project_id: UUID | None, team_id: UUID) -> None:
    if project_id is None:
        return
    project = db.get(models.Project, project_id)
    if project is None or project.team_id != team_id:
        raise ValidationError("Project does not belong to the requesting team")


def _item_snapshot(items: Iterable[models.RequestItem]) -> list[dict]:
    return [
        {
            "item_name": item.item_name,
            "inventory_item_id": item.inventory_item_id,
            "quantity": item.quantity,
            "status": item.status,
        }
        for item in items
    ]


def get_request(db: Session, request_id: UUID, actor: models.User) -> models.MaterialRequest:
    request = load_request(db, request_id)
    rbac.require_capability(db, actor, request, rbac.VIEW, "Not allowed to view this request")
    return request


def list_requests(
    db: Session,
    actor: models.User,
    *,
    status: str | None = None,
    team_id: UUID | None = None,
    priority: str | None = None,
) -> list[models.MaterialRequest]:
    query = db.query(models.MaterialRequest).options(
        selectinload(models.MaterialRequest.items),
        selectinload(models.MaterialRequest.approvals),
    )
    if not actor.is_privileged:
        team_ids = [
            member.team_id
            for member in db.query(models.TeamMember)
            .filter(models.TeamMember.user_id == actor.id)
            .all()
        ]
        query = query.filter(
            sa.or_(
                models.MaterialRequest.requested_by == actor.id,
                models.MaterialRequest.team_id.in_(team_ids),
            )
        )
    if status:
        query = query.filter(models.MaterialRequest.status == status)
    if team_id:
        query = query.filter(models.MaterialRequest.team_id == team_id)
    if priority:
        query = query.filter(models.MaterialRequest.priority == priority)
    return query.order_by(models.MaterialRequest.requested_at.desc()).all()


def list_history(
    db: Session, request_id: UUID, actor: models.User
) -> list[models.RequestHistory]:
    get_request(db, request_id, actor)
    return audit.list_request_history(db, request_id)


def create_request(
    db: Session,
    actor: models.User,
    data: schemas.MaterialRequestCreate,
) -> RequestActionResult:
    team = db.get(models.Team, data.team_id)
    if team is None:
        raise NotFoundError(f"Team {data.team_id} not found")
    access = rbac.describe_access(db, actor, team_id=team.id)
    if rbac.CREATE not in rbac.resolve_capabilities(access):
        raise PermissionDeniedError("Only team leaders or managers can create requests")
    title = (data.title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    _validate_priority(data.priority)
    _validate_project(db, data.project_id, team.id)
    items = _build_items(db, data.items)

    now = utcnow()
    request = models.MaterialRequest(
        request_number=generate_request_number(db, now),
        team_id=team.id,
        project_id=data.project_id,
        title=title,
        description=data.description,
        priority=data.priority,
        urgency_reason=data.urgency_reason,
        is_consumable_request=data.is_consumable_request,
        requires_quick_approval=data.requires_quick_approval,
        required_by=data.required_by,
        delivery_address=data.delivery_address,
        notes=data.notes,
        requested_by=actor.id,
        requested_at=now,
        status="submitted" if data.requires_quick_approval else "draft",
        delivery_status="not_ordered",
    )
    if data.requires_quick_approval:
        request.submitted_at = now
    request.items = items
    db.add(request)
    db.flush()
    approvals.seed_chain(db, request, data.approval_chain)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "created",
        actor.id,
        new_value={
            "status": request.status,
            "request_number": request.request_number,
            "items": _item_snapshot(request.items),
        },
    )
    db.refresh(request)

    result = RequestActionResult(request=request)
    payload = request_payload(request)
    result.effects += effects.notify(
        privileged_emails(db, exclude=actor.id), "request_created", payload
    )
    result.effects += effects.publish(team.id, "request_created", payload)
    logger.info("Created %s for team %s", request.request_number, team.id)
    return result


def update_request(
    db: Session,
    request_id: UUID,
    actor: models.User,
    data: schemas.MaterialRequestUpdate,
) -> RequestActionResult:
    request = load_request(db, request_id)
    rbac.require_capability(db, actor, request, rbac.UPDATE, "Not allowed to edit this request")
    if request.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Request in status {request.status} can no longer be edited")

    changes = data.model_dump(exclude_unset=True)
    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("Title is required")
    _validate_priority(changes.get("priority"))
    if "project_id" in changes:
        _validate_project(db, changes["project_id"], request.team_id)

    old_value: dict = {}
    new_value: dict = {}
    for field in _EDITABLE_FIELDS:
        if field not in changes or field == "priority" and changes[field] is None:
            continue
        current = getattr(request, field)
        if current != changes[field]:
            old_value[field] = current
            new_value[field] = changes[field]
            setattr(request, field, changes[field])
    if data.items is not None:
        items = _build_items(db, data.items)
        old_value["items"] = _item_snapshot(request.items)
        request.items = items
        db.flush()
        new_value["items"] = _item_snapshot(request.items)
    db.flush()
    if new_value:
        audit.record_request_history(
            db, request.id, "updated", actor.id, old_value=old_value, new_value=new_value
        )
    db.refresh(request)
    return RequestActionResult(request=request)


def delete_request(db: Session, request_id: UUID, actor: models.User) -> RequestActionResult:
    request = load_request(db, request_id)
    rbac.require_capability(db, actor, request, rbac.DELETE, "Not allowed to delete this request")
    if not actor.is_privileged and request.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Request in status {request.status} can no longer be deleted")

    item_ids = [item.id for item in request.items]
    if item_ids:
        # ledger rows stay; only their link to the deleted lines is cleared
        for model in (models.InventoryAssignment, models.ConsumptionLog):
            db.execute(
                sa.update(model)
                .where(model.request_item_id.in_(item_ids))
                .values(request_item_id=None)
                .execution_options(synchronize_session=False)
            )
    audit.record_request_history(
        db,
        request.id,
        "deleted",
        actor.id,
        old_value={**status_snapshot(request), "request_number": request.request_number},
    )
    db.delete(request)
    db.flush()
    logger.info("Deleted %s", request.request_number)
    return RequestActionResult(request=request)


def submit_request(db: Session, request_id: UUID, actor: models.User) -> RequestActionResult:
    request = load_request(db, request_id)
    if request.requested_by != actor.id:
        raise PermissionDeniedError("Only the requester can submit this request")
    if request.status != "draft":
        raise InvalidStateError(f"Only draft requests can be submitted, not {request.status}")
    if not request.items:
        raise ValidationError("A request needs at least one item before submission")

    previous = request.status
    request.status = "submitted" if request.requires_quick_approval else "pending_review"
    request.submitted_at = utcnow()
    current_approver = approvals.refresh_current_approver(db, request)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "submitted",
        actor.id,
        old_value={"status": previous},
        new_value={"status": request.status},
    )

    result = RequestActionResult(request=request)
    payload = request_payload(request)
    if current_approver is not None:
        result.effects += effects.notify(
            user_emails(db, [current_approver]),
            "request_pending_approval",
            request_payload(request, approval_level=1),
        )
    else:
        result.effects += effects.notify(
            privileged_emails(db, exclude=actor.id), "request_submitted", payload
        )
    result.effects += effects.publish(request.team_id, "request_submitted", payload)
    return result


def cancel_request(
    db: Session,
    request_id: UUID,
    actor: models.User,
    reason: str | None = None,
) -> RequestActionResult:
    request = load_request(db, request_id)
    rbac.require_capability(db, actor, request, rbac.CANCEL, "Not allowed to cancel this request")
    if request.status in NON_CANCELLABLE_STATUSES:
        raise InvalidStateError(f"Request in status {request.status} cannot be cancelled")

    before = status_snapshot(request)
    request.status = "cancelled"
    request.cancelled_at = utcnow()
    request.current_approver_id = None
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "cancelled",
        actor.id,
        old_value=before,
        new_value=status_snapshot(request),
        notes=reason,
    )

    result = RequestActionResult(request=request)
    payload = request_payload(request, reason=reason)
    recipients = user_emails(
        db, [user_id for user_id in (request.requested_by,) if user_id != actor.id]
    )
    result.effects += effects.notify(recipients, "request_cancelled", payload)
    result.effects += effects.publish(request.team_id, "request_cancelled", payload)
    return result


def _stamp_status(request: models.MaterialRequest, status: str, actor: models.User) -> None:
    now = utcnow()
    if status in ("submitted", "pending_review") and request.submitted_at is None:
        request.submitted_at = now
    elif status == "declined":
        request.reviewed_by = actor.id
        request.reviewed_at = now
    elif status == "ordered":
        request.ordered_at = now
    elif status == "delivered":
        request.delivered_at = now
    elif status == "completed":
        request.completed_at = now


def set_status(
    db: Session,
    request_id: UUID,
    new_status: str,
    actor: models.User,
    notes: str | None = None,
) -> RequestActionResult:
    """Privileged lifecycle override; approval statuses run fulfillment."""

    request = load_request(db, request_id)
    rbac.require_capability(
        db, actor, request, rbac.SET_STATUS, "Manager or director privileges required"
    )
    if new_status not in models.REQUEST_STATUSES:
        raise ValidationError(f"Unknown status {new_status}")
    allowed = STATUS_TRANSITIONS.get(request.status, frozenset())
    if new_status not in allowed:
        raise InvalidStateError(f"Cannot move request from {request.status} to {new_status}")

    previous = request.status
    result = RequestActionResult(request=request)
    if new_status in APPROVAL_STATUSES:
        result.outcomes = fulfillment.apply_approval(
            db, request, actor_id=actor.id, status=new_status
        )
    else:
        request.status = new_status
        _stamp_status(request, new_status, actor)
    approvals.refresh_current_approver(db, request)
    if notes:
        request.internal_notes = notes
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "status_changed",
        actor.id,
        old_value={"status": previous},
        new_value={"status": request.status},
        notes=notes,
    )

    payload = request_payload(request, old_status=previous, new_status=request.status, notes=notes)
    template = {
        "approved": "request_approved",
        "partially_approved": "request_approved",
        "declined": "request_declined",
    }.get(request.status, "request_status_changed")
    result.effects += effects.notify(user_emails(db, [request.requested_by]), template, payload)
    result.effects += effects.publish(request.team_id, "request_status_changed", payload)
    logger.info("%s moved from %s to %s", request.request_number, previous, request.status)
    return result


def set_delivery_status(
    db: Session,
    request_id: UUID,
    delivery_status: str,
    actor: models.User,
    notes: str | None = None,
) -> RequestActionResult:
    request = load_request(db, request_id)
    rbac.require_capability(
        db, actor, request, rbac.SET_DELIVERY_STATUS, "Manager or director privileges required"
    )
    if delivery_status not in models.DELIVERY_STATUSES:
        raise ValidationError(f"Unknown delivery status {delivery_status}")
    if request.status not in DELIVERY_ELIGIBLE_STATUSES:
        raise InvalidStateError(
            f"Delivery cannot be tracked while the request is {request.status}"
        )

    before = status_snapshot(request)
    now = utcnow()
    request.delivery_status = delivery_status
    if notes:
        request.delivery_notes = notes
    if delivery_status == "ordered" and request.status in APPROVAL_STATUSES:
        request.status = "ordered"
        request.ordered_at = now
    elif delivery_status == "in_transit" and request.status in APPROVAL_STATUSES + ("ordered",):
        request.status = "in_transit"
    elif delivery_status == "delivered":
        for item in request.items:
            item.status = "delivered"
        request.delivered_at = now
        if request.status != "completed":
            request.status = "delivered"
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "delivery_status_changed",
        actor.id,
        old_value=before,
        new_value=status_snapshot(request),
        notes=notes,
    )

    result = RequestActionResult(request=request)
    payload = request_payload(request, delivery_notes=notes)
    if delivery_status == "delivered":
        result.effects += effects.notify(
            user_emails(db, [request.requested_by]), "request_delivered", payload
        )
    result.effects += effects.publish(request.team_id, "request_delivery_updated", payload)
    return result
