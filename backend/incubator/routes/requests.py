from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from ..database import get_db
from ..auth import get_current_user
from ..dispatch import dispatch_effects
from .. import models, schemas
from ..services import approvals, comments, requests
from ..services.common import RequestActionResult

router = APIRouter(prefix="/api/requests", tags=["requests"])


async def _commit_and_dispatch(db: Session, result: RequestActionResult) -> schemas.RequestActionOut:
    db.commit()
    await dispatch_effects(result.effects)
    db.refresh(result.request)
    return schemas.RequestActionOut(
        request=schemas.MaterialRequestOut.model_validate(result.request),
        outcomes=[schemas.ItemOutcomeOut.model_validate(outcome) for outcome in result.outcomes],
    )


@router.post("", response_model=schemas.RequestActionOut)
async def create_request(
    payload: schemas.MaterialRequestCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.create_request(db, user, payload)
    return await _commit_and_dispatch(db, result)


@router.get("", response_model=List[schemas.MaterialRequestOut])
async def list_requests(
    status: Optional[str] = None,
    team_id: Optional[UUID] = None,
    priority: Optional[str] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return requests.list_requests(db, user, status=status, team_id=team_id, priority=priority)


@router.get("/{request_id}", response_model=schemas.MaterialRequestOut)
async def get_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return requests.get_request(db, request_id, user)


@router.put("/{request_id}", response_model=schemas.RequestActionOut)
async def update_request(
    request_id: UUID,
    payload: schemas.MaterialRequestUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.update_request(db, request_id, user, payload)
    return await _commit_and_dispatch(db, result)


@router.delete("/{request_id}", status_code=204)
async def delete_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.delete_request(db, request_id, user)
    db.commit()
    await dispatch_effects(result.effects)
    return Response(status_code=204)


@router.post("/{request_id}/submit", response_model=schemas.RequestActionOut)
async def submit_request(
    request_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.submit_request(db, request_id, user)
    return await _commit_and_dispatch(db, result)


@router.post("/{request_id}/cancel", response_model=schemas.RequestActionOut)
async def cancel_request(
    request_id: UUID,
    payload: schemas.RequestCancel,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.cancel_request(db, request_id, user, payload.reason)
    return await _commit_and_dispatch(db, result)


@router.put("/{request_id}/status", response_model=schemas.RequestActionOut)
async def set_status(
    request_id: UUID,
    payload: schemas.RequestStatusUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.set_status(db, request_id, payload.status, user, payload.notes)
    return await _commit_and_dispatch(db, result)


@router.put("/{request_id}/delivery", response_model=schemas.RequestActionOut)
async def set_delivery_status(
    request_id: UUID,
    payload: schemas.DeliveryStatusUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = requests.set_delivery_status(
        db, request_id, payload.delivery_status, user, payload.notes
    )
    return await _commit_and_dispatch(db, result)


@router.post("/{request_id}/approvals/{level}/approve", response_model=schemas.RequestActionOut)
async def approve_level(
    request_id: UUID,
    level: int,
    payload: schemas.ApprovalDecision,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = approvals.approve(db, request_id, level, user, payload.comments)
    return await _commit_and_dispatch(db, result)


@router.post("/{request_id}/approvals/{level}/decline", response_model=schemas.RequestActionOut)
async def decline_level(
    request_id: UUID,
    level: int,
    payload: schemas.ApprovalDecision,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = approvals.decline(db, request_id, level, user, payload.comments)
    return await _commit_and_dispatch(db, result)


@router.post("/{request_id}/approvals/{level}/delegate", response_model=schemas.RequestActionOut)
async def delegate_level(
    request_id: UUID,
    level: int,
    payload: schemas.ApprovalDelegation,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    result = approvals.delegate(db, request_id, level, user, payload.delegate_id, payload.comments)
    return await _commit_and_dispatch(db, result)


@router.get("/{request_id}/history", response_model=List[schemas.RequestHistoryOut])
async def list_history(
    request_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return requests.list_history(db, request_id, user)


@router.get("/{request_id}/comments", response_model=List[schemas.RequestCommentOut])
async def list_comments(
    request_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return comments.list_comments(db, request_id, user)


@router.post("/{request_id}/comments", response_model=schemas.RequestCommentOut)
async def add_comment(
    request_id: UUID,
    payload: schemas.RequestCommentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    entry = comments.add_comment(db, request_id, user, payload.comment, payload.is_internal)
    db.commit()
    db.refresh(entry)
    return entry


@router.put("/{request_id}/comments/{comment_id}", response_model=schemas.RequestCommentOut)
async def update_comment(
    request_id: UUID,
    comment_id: UUID,
    payload: schemas.RequestCommentUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    entry = comments.update_comment(db, request_id, comment_id, user, payload.comment)
    db.commit()
    db.refresh(entry)
    return entry


@router.delete("/{request_id}/comments/{comment_id}", status_code=204)
async def delete_comment(
    request_id: UUID,
    comment_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    comments.delete_comment(db, request_id, comment_id, user)
    db.commit()
    return Response(status_code=204)
