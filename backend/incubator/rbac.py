from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from . import models
from .errors import PermissionDeniedError

# purpose: centralize capability resolution consumed by every request transition guard
# status: active

VIEW = "view"
CREATE = "create"
UPDATE = "update"
DELETE = "delete"
SUBMIT = "submit"
CANCEL = "cancel"
SET_STATUS = "set_status"
SET_DELIVERY_STATUS = "set_delivery_status"
COMMENT = "comment"
COMMENT_INTERNAL = "comment_internal"
VIEW_INTERNAL = "view_internal"
MODERATE_COMMENTS = "moderate_comments"
MANAGE_INVENTORY = "manage_inventory"
RECEIVE_DELEGATION = "receive_delegation"

_PRIVILEGED_CAPABILITIES = frozenset(
    {
        VIEW,
        CREATE,
        UPDATE,
        DELETE,
        CANCEL,
        SET_STATUS,
        SET_DELIVERY_STATUS,
        COMMENT,
        COMMENT_INTERNAL,
        VIEW_INTERNAL,
        MODERATE_COMMENTS,
        MANAGE_INVENTORY,
        RECEIVE_DELEGATION,
    }
)
_REQUESTER_CAPABILITIES = frozenset({VIEW, UPDATE, DELETE, SUBMIT, CANCEL, COMMENT})
_TEAM_MEMBER_CAPABILITIES = frozenset({VIEW, COMMENT})


@dataclass(frozen=True)
class RequestAccess:
    """Describe how an actor relates to a request or team."""

    role: str
    is_requester: bool = False
    is_team_member: bool = False
    is_team_leader: bool = False


def resolve_capabilities(access: RequestAccess) -> frozenset[str]:
    """Return the set of actions allowed for the supplied role and ownership."""

    allowed: set[str] = set()
    if access.role in models.PRIVILEGED_ROLES:
        allowed |= _PRIVILEGED_CAPABILITIES
    if access.is_team_member or access.is_team_leader:
        allowed |= _TEAM_MEMBER_CAPABILITIES
    if access.is_team_leader:
        allowed.add(CREATE)
    if access.is_requester:
        allowed |= _REQUESTER_CAPABILITIES
    return frozenset(allowed)


def _membership(db: Session, user: models.User, team_id: UUID | None) -> models.TeamMember | None:
    if team_id is None:
        return None
    return (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id == user.id)
        .first()
    )


def describe_access(
    db: Session,
    user: models.User,
    *,
    team_id: UUID | None,
    requested_by: UUID | None = None,
) -> RequestAccess:
    membership = _membership(db, user, team_id)
    return RequestAccess(
        role=user.role,
        is_requester=requested_by is not None and requested_by == user.id,
        is_team_member=membership is not None,
        is_team_leader=membership is not None and membership.role == "team_leader",
    )


def capabilities_for(db: Session, user: models.User, request: models.MaterialRequest) -> frozenset[str]:
    """Resolve the actor's capabilities on an existing request."""

    access = describe_access(db, user, team_id=request.team_id, requested_by=request.requested_by)
    return resolve_capabilities(access)


def require_capability(
    db: Session,
    user: models.User,
    request: models.MaterialRequest,
    capability: str,
    detail: str | None = None,
) -> frozenset[str]:
    allowed = capabilities_for(db, user, request)
    if capability not in allowed:
        raise PermissionDeniedError(detail or "Access denied")
    return allowed


def require_role_capability(user: models.User, capability: str, detail: str | None = None) -> None:
    """Guard actions that depend on role alone, such as ledger maintenance."""

    if capability not in resolve_capabilities(RequestAccess(role=user.role)):
        raise PermissionDeniedError(detail or "Manager or director privileges required")
