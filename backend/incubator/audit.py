import logging
from typing import Any
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

# purpose: append-only request history written as a best-effort side channel
# inputs: SQLAlchemy session, request id, action tag, actor, before/after snapshots
# outputs: RequestHistory rows ordered by per-request sequence
# status: active

logger = logging.getLogger(__name__)

MAX_SEQUENCE_ATTEMPTS = 5

HISTORY_APPEND_FAILURES = Counter(
    "history_append_failures_total",
    "Request history entries that could not be appended",
)


def _snapshot(value: Any) -> Any:
    if value is None:
        return None
    return jsonable_encoder(value)


def _next_sequence(db: Session, request_id: UUID) -> int:
    latest = (
        db.query(func.max(models.RequestHistory.sequence))
        .filter(models.RequestHistory.request_id == request_id)
        .scalar()
    )
    return 1 if latest is None else latest + 1


def record_request_history(
    db: Session,
    request_id: UUID,
    action: str,
    performed_by: UUID | None,
    old_value: Any = None,
    new_value: Any = None,
    notes: str | None = None,
) -> models.RequestHistory | None:
    """Append a history entry; failures are logged and never raised."""

    # the triggering mutation must surface its own flush errors
    db.flush()
    try:
        for attempt in range(1, MAX_SEQUENCE_ATTEMPTS + 1):
            try:
                with db.begin_nested():
                    entry = models.RequestHistory(
                        request_id=request_id,
                        sequence=_next_sequence(db, request_id),
                        action=action,
                        performed_by=performed_by,
                        old_value=_snapshot(old_value),
                        new_value=_snapshot(new_value),
                        notes=notes,
                    )
                    db.add(entry)
                return entry
            except IntegrityError:
                # a concurrent writer took this sequence number
                if attempt == MAX_SEQUENCE_ATTEMPTS:
                    raise
                logger.info("History sequence taken for request %s, retrying", request_id)
    except Exception:
        HISTORY_APPEND_FAILURES.inc()
        logger.exception("Failed to append %s history for request %s", action, request_id)
    return None


def list_request_history(db: Session, request_id: UUID) -> list[models.RequestHistory]:
    return (
        db.query(models.RequestHistory)
        .filter(models.RequestHistory.request_id == request_id)
        .order_by(models.RequestHistory.sequence.asc())
        .all()
    )
