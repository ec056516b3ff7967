"""Discussion thread attached to material requests."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, rbac
from ..errors import NotFoundError, PermissionDeniedError, ValidationError
from .common import load_request

# purpose: add, list, edit and remove request comments with internal visibility rules
# status: active


def _clean(comment: str | None) -> str:
    text = (comment or "").strip()
    if not text:
        raise ValidationError("Comment text is required")
    return text


def _get_comment(db: Session, request_id: UUID, comment_id: UUID) -> models.RequestComment:
    comment = db.get(models.RequestComment, comment_id)
    if comment is None or comment.request_id != request_id:
        raise NotFoundError(f"Comment {comment_id} not found")
    return comment


def _ensure_author_or_moderator(
    allowed: frozenset[str], comment: models.RequestComment, actor: models.User
) -> None:
    if comment.user_id != actor.id and rbac.MODERATE_COMMENTS not in allowed:
        raise PermissionDeniedError("Only the author or a manager can change this comment")


def add_comment(
    db: Session,
    request_id: UUID,
    actor: models.User,
    comment: str,
    is_internal: bool = False,
) -> models.RequestComment:
    request = load_request(db, request_id)
    allowed = rbac.require_capability(
        db, actor, request, rbac.COMMENT, "Not allowed to comment on this request"
    )
    if is_internal and rbac.COMMENT_INTERNAL not in allowed:
        raise PermissionDeniedError("Only managers can add internal comments")
    entry = models.RequestComment(
        request_id=request.id,
        user_id=actor.id,
        comment=_clean(comment),
        is_internal=is_internal,
    )
    db.add(entry)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "commented",
        actor.id,
        new_value={"comment_id": entry.id, "is_internal": is_internal},
    )
    return entry


def list_comments(
    db: Session, request_id: UUID, actor: models.User
) -> list[models.RequestComment]:
    request = load_request(db, request_id)
    allowed = rbac.require_capability(
        db, actor, request, rbac.VIEW, "Not allowed to view this request"
    )
    query = db.query(models.RequestComment).filter(models.RequestComment.request_id == request.id)
    if rbac.VIEW_INTERNAL not in allowed:
        query = query.filter(models.RequestComment.is_internal.is_(False))
    return query.order_by(models.RequestComment.created_at.asc()).all()


def update_comment(
    db: Session,
    request_id: UUID,
    comment_id: UUID,
    actor: models.User,
    comment: str,
) -> models.RequestComment:
    request = load_request(db, request_id)
    allowed = rbac.require_capability(
        db, actor, request, rbac.VIEW, "Not allowed to view this request"
    )
    entry = _get_comment(db, request.id, comment_id)
    _ensure_author_or_moderator(allowed, entry, actor)
    previous = entry.comment
    entry.comment = _clean(comment)
    db.flush()
    audit.record_request_history(
        db,
        request.id,
        "comment_updated",
        actor.id,
        old_value={"comment_id": entry.id, "comment": previous},
        new_value={"comment_id": entry.id, "comment": entry.comment},
    )
    return entry


def delete_comment(
    db: Session, request_id: UUID, comment_id: UUID, actor: models.User
) -> None:
    request = load_request(db, request_id)
    allowed = rbac.require_capability(
        db, actor, request, rbac.VIEW, "Not allowed to view this request"
    )
    entry = _get_comment(db, request.id, comment_id)
    _ensure_author_or_moderator(allowed, entry, actor)
    snapshot = {"comment_id": entry.id, "comment": entry.comment, "is_internal": entry.is_internal}
    db.delete(entry)
    db.flush()
    audit.record_request_history(db, request.id, "comment_deleted", actor.id, old_value=snapshot)
