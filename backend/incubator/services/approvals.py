"""Approval chain manager for material requests."""

from __future__ import annotations

import logging
from typing import Sequence
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session, aliased

from .. import audit, effects, models
from ..errors import (
    AlreadyProcessedError,
    InvalidStateError,
    NotFoundError,
    OutOfOrderApprovalError,
    PermissionDeniedError,
    ValidationError,
)
from . import fulfillment
from .common import RequestActionResult, load_request, request_payload, user_emails, utcnow

# purpose: enforce ordered per-level sign-off with delegation on material requests
# inputs: SQLAlchemy session, request id, approval level, acting user
# outputs: RequestActionResult with outbox effects and fulfillment outcomes
# status: active
# depends_on: incubator.services.fulfillment

logger = logging.getLogger(__name__)

OPEN_APPROVAL_STATUSES = ("pending", "delegated")
REVIEWABLE_REQUEST_STATUSES = ("submitted", "pending_review")
DELEGABLE_REQUEST_STATUSES = ("draft", "submitted", "pending_review")


def _ordered_levels(db: Session, request_id: UUID) -> list[models.RequestApproval]:
    return (
        db.query(models.RequestApproval)
        .filter(models.RequestApproval.request_id == request_id)
        .order_by(models.RequestApproval.approval_level.asc())
        .all()
    )


def seed_chain(
    db: Session,
    request: models.MaterialRequest,
    approver_ids: Sequence[UUID],
) -> list[models.RequestApproval]:
    """Create one pending level per approver, in order, starting at level 1."""

    if not approver_ids:
        return []
    found = {
        user.id
        for user in db.query(models.User).filter(models.User.id.in_(list(approver_ids))).all()
    }
    missing = [str(approver_id) for approver_id in approver_ids if approver_id not in found]
    if missing:
        raise ValidationError(f"Unknown approver(s): {', '.join(missing)}")
    levels = []
    for index, approver_id in enumerate(approver_ids, start=1):
        level = models.RequestApproval(
            request_id=request.id,
            approval_level=index,
            approver_id=approver_id,
            status="pending",
        )
        db.add(level)
        levels.append(level)
    request.approval_chain = [str(approver_id) for approver_id in approver_ids]
    db.flush()
    refresh_current_approver(db, request)
    return levels


def refresh_current_approver(db: Session, request: models.MaterialRequest) -> UUID | None:
    """Recompute the cached current approver from the chain's level statuses."""

    current = None
    if request.status not in DELEGABLE_REQUEST_STATUSES:
        request.current_approver_id = None
        return None
    for level in _ordered_levels(db, request.id):
        if level.status == "approved":
            continue
        if level.status in OPEN_APPROVAL_STATUSES:
            current = level.delegated_to_id or level.approver_id
        break
    request.current_approver_id = current
    return current


def _get_level(db: Session, request_id: UUID, level: int) -> models.RequestApproval:
    approval = (
        db.query(models.RequestApproval)
        .filter(
            models.RequestApproval.request_id == request_id,
            models.RequestApproval.approval_level == level,
        )
        .first()
    )
    if approval is None:
        raise NotFoundError(f"Approval level {level} not found for request {request_id}")
    return approval


def _earlier_levels_open(approval: models.RequestApproval):
    earlier = aliased(models.RequestApproval)
    return sa.exists().where(
        earlier.request_id == approval.request_id,
        earlier.approval_level < approval.approval_level,
        earlier.status != "approved",
    )


def _ensure_decidable(
    db: Session,
    request: models.MaterialRequest,
    approval: models.RequestApproval,
    actor: models.User,
) -> None:
    if actor.id not in (approval.approver_id, approval.delegated_to_id):
        raise PermissionDeniedError("Only the assigned approver or delegate can act on this level")
    if approval.status not in OPEN_APPROVAL_STATUSES:
        raise AlreadyProcessedError(
            f"Approval level {approval.approval_level} is already {approval.status}"
        )
    if request.status not in REVIEWABLE_REQUEST_STATUSES:
        raise InvalidStateError(f"Request in status {request.status} is not awaiting approval")
    if db.query(_earlier_levels_open(approval)).scalar():
        raise OutOfOrderApprovalError(
            f"Earlier approval levels must be approved before level {approval.approval_level}"
        )


def _claim_level(
    db: Session,
    approval: models.RequestApproval,
    status: str,
    comments: str | None,
) -> None:
    """Decide a level only if it is still open and every earlier level is approved."""

    result = db.execute(
        sa.update(models.RequestApproval)
        .where(
            models.RequestApproval.id == approval.id,
            models.RequestApproval.status.in_(OPEN_APPROVAL_STATUSES),
            ~_earlier_levels_open(approval),
        )
        .values(status=status, decided_at=utcnow(), comments=comments)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(approval)
        if approval.status not in OPEN_APPROVAL_STATUSES:
            raise AlreadyProcessedError(
                f"Approval level {approval.approval_level} is already {approval.status}"
            )
        raise OutOfOrderApprovalError(
            f"Earlier approval levels must be approved before level {approval.approval_level}"
        )
    db.refresh(approval)


def _level_snapshot(approval: models.RequestApproval) -> dict:
    return {
        "approval_level": approval.approval_level,
        "status": approval.status,
        "approver_id": approval.approver_id,
        "delegated_to_id": approval.delegated_to_id,
    }


def approve(
    db: Session,
    request_id: UUID,
    level: int,
    actor: models.User,
    comments: str | None = None,
) -> RequestActionResult:
    request = load_request(db, request_id)
    approval = _get_level(db, request.id, level)
    _ensure_decidable(db, request, approval, actor)
    before = _level_snapshot(approval)
    _claim_level(db, approval, "approved", comments)
    audit.record_request_history(
        db,
        request.id,
        "approval_approved",
        actor.id,
        old_value=before,
        new_value=_level_snapshot(approval),
        notes=comments,
    )

    result = RequestActionResult(request=request)
    remaining = [
        other for other in _ordered_levels(db, request.id) if other.status != "approved"
    ]
    if remaining:
        previous = request.status
        request.status = "pending_review"
        next_approver = refresh_current_approver(db, request)
        if previous != request.status:
            audit.record_request_history(
                db,
                request.id,
                "status_changed",
                actor.id,
                old_value={"status": previous},
                new_value={"status": request.status},
            )
        result.effects += effects.notify(
            user_emails(db, [next_approver]),
            "request_pending_approval",
            request_payload(request, approval_level=remaining[0].approval_level),
        )
    else:
        previous = request.status
        result.outcomes = fulfillment.apply_approval(db, request, actor_id=actor.id)
        refresh_current_approver(db, request)
        result.effects += effects.notify(
            user_emails(db, [request.requested_by]),
            "request_approved",
            request_payload(request, approval_level=approval.approval_level, comments=comments),
        )
        result.effects += effects.publish(
            request.team_id,
            "request_status_changed",
            request_payload(request, old_status=previous, new_status=request.status),
        )
    db.flush()
    result.effects += effects.publish(
        request.team_id,
        "request_approval_updated",
        request_payload(request, approval_level=approval.approval_level, decision="approved"),
    )
    logger.info("Level %s of %s approved by %s", level, request.request_number, actor.id)
    return result


def decline(
    db: Session,
    request_id: UUID,
    level: int,
    actor: models.User,
    comments: str | None = None,
) -> RequestActionResult:
    """Decline a level; the whole request becomes declined."""

    request = load_request(db, request_id)
    approval = _get_level(db, request.id, level)
    _ensure_decidable(db, request, approval, actor)
    before = _level_snapshot(approval)
    _claim_level(db, approval, "declined", comments)

    previous = request.status
    request.status = "declined"
    request.reviewed_by = actor.id
    request.reviewed_at = utcnow()
    refresh_current_approver(db, request)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "approval_declined",
        actor.id,
        old_value={**before, "request_status": previous},
        new_value={**_level_snapshot(approval), "request_status": request.status},
        notes=comments,
    )

    result = RequestActionResult(request=request)
    result.effects += effects.notify(
        user_emails(db, [request.requested_by]),
        "request_declined",
        request_payload(request, approval_level=approval.approval_level, comments=comments),
    )
    result.effects += effects.publish(
        request.team_id,
        "request_approval_updated",
        request_payload(request, approval_level=approval.approval_level, decision="declined"),
    )
    result.effects += effects.publish(
        request.team_id,
        "request_status_changed",
        request_payload(request, old_status=previous, new_status=request.status),
    )
    logger.info("Level %s of %s declined by %s", level, request.request_number, actor.id)
    return result


def delegate(
    db: Session,
    request_id: UUID,
    level: int,
    actor: models.User,
    delegate_id: UUID,
    comments: str | None = None,
) -> RequestActionResult:
    """Hand one level's decision rights to a privileged user."""

    request = load_request(db, request_id)
    approval = _get_level(db, request.id, level)
    if actor.id != approval.approver_id:
        raise PermissionDeniedError("Only the original approver can delegate this level")
    if approval.status not in OPEN_APPROVAL_STATUSES:
        raise AlreadyProcessedError(
            f"Approval level {approval.approval_level} is already {approval.status}"
        )
    if approval.status == "delegated":
        raise InvalidStateError(f"Approval level {approval.approval_level} is already delegated")
    if request.status not in DELEGABLE_REQUEST_STATUSES:
        raise InvalidStateError(f"Request in status {request.status} can no longer be delegated")
    delegate_user = db.get(models.User, delegate_id)
    if delegate_user is None or not delegate_user.is_privileged:
        raise ValidationError("Delegate must be an existing manager or director")
    if delegate_user.id == approval.approver_id:
        raise ValidationError("Cannot delegate an approval level to its own approver")

    before = _level_snapshot(approval)
    result = db.execute(
        sa.update(models.RequestApproval)
        .where(
            models.RequestApproval.id == approval.id,
            models.RequestApproval.status == "pending",
        )
        .values(status="delegated", delegated_to_id=delegate_user.id, comments=comments)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(approval)
        raise AlreadyProcessedError(
            f"Approval level {approval.approval_level} is already {approval.status}"
        )
    db.refresh(approval)
    refresh_current_approver(db, request)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "approval_delegated",
        actor.id,
        old_value=before,
        new_value=_level_snapshot(approval),
        notes=comments,
    )

    action = RequestActionResult(request=request)
    action.effects += effects.notify(
        [delegate_user.email],
        "approval_delegated",
        request_payload(request, approval_level=approval.approval_level, comments=comments),
    )
    action.effects += effects.publish(
        request.team_id,
        "request_approval_updated",
        request_payload(
            request,
            approval_level=approval.approval_level,
            decision="delegated",
            delegated_to_id=str(delegate_user.id),
        ),
    )
    return action
