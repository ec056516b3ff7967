"""Helpers shared by the request lifecycle services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from .. import models
from ..effects import Effect
from ..errors import NotFoundError

if TYPE_CHECKING:
    from .fulfillment import ItemOutcome

# purpose: load requests, build notification payloads and carry transition results
# status: active


@dataclass(slots=True)
class RequestActionResult:
    """Outcome of a request transition plus the effects to dispatch after commit."""

    request: models.MaterialRequest
    effects: list[Effect] = field(default_factory=list)
    outcomes: list["ItemOutcome"] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_request(db: Session, request_id: UUID) -> models.MaterialRequest:
    request = (
        db.query(models.MaterialRequest)
        .options(
            selectinload(models.MaterialRequest.items),
            selectinload(models.MaterialRequest.approvals),
        )
        .filter(models.MaterialRequest.id == request_id)
        .first()
    )
    if request is None:
        raise NotFoundError(f"Request {request_id} not found")
    return request


def status_snapshot(request: models.MaterialRequest) -> dict[str, Any]:
    return {"status": request.status, "delivery_status": request.delivery_status}


def request_payload(request: models.MaterialRequest, **extra: Any) -> dict[str, Any]:
    """Template and event data describing a request."""

    requester = request.requester
    team = request.team
    payload = {
        "request_id": str(request.id),
        "request_number": request.request_number,
        "title": request.title,
        "status": request.status,
        "delivery_status": request.delivery_status,
        "priority": request.priority,
        "team_id": str(request.team_id),
        "team_name": team.name if team else "",
        "requester_name": (requester.full_name or requester.email) if requester else "",
    }
    payload.update(extra)
    return payload


def user_emails(db: Session, user_ids: Iterable[UUID | None]) -> list[str]:
    ids = [user_id for user_id in user_ids if user_id is not None]
    if not ids:
        return []
    users = (
        db.query(models.User)
        .filter(models.User.id.in_(ids), models.User.is_active.is_(True))
        .all()
    )
    return [user.email for user in users if user.email]


def privileged_emails(db: Session, exclude: UUID | None = None) -> list[str]:
    query = db.query(models.User).filter(
        models.User.role.in_(models.PRIVILEGED_ROLES),
        models.User.is_active.is_(True),
    )
    if exclude is not None:
        query = query.filter(models.User.id != exclude)
    return [user.email for user in query.all() if user.email]


def append_note(existing: str | None, note: str) -> str:
    if not existing:
        return note
    return f"{existing}\n{note}"
