from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from ..database import get_db
from ..auth import get_current_user
from ..dispatch import dispatch_effects
from .. import effects, models, schemas
from ..services import consumption, ledger

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


@router.post("/items", response_model=schemas.InventoryItemOut)
async def create_item(
    payload: schemas.InventoryItemCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    item = consumption.create_item(db, user, payload)
    db.commit()
    db.refresh(item)
    return item


@router.get("/items", response_model=List[schemas.InventoryItemOut])
async def list_items(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return consumption.list_items(db, category)


@router.get("/items/{item_id}", response_model=schemas.InventoryItemOut)
async def get_item(
    item_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return ledger.get_item(db, item_id)


@router.get("/items/{item_id}/transactions", response_model=List[schemas.InventoryTransactionOut])
async def list_transactions(
    item_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return ledger.list_transactions(db, item_id)


@router.post("/items/{item_id}/restock", response_model=schemas.LedgerMovementOut)
async def restock_item(
    item_id: UUID,
    payload: schemas.RestockIn,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    movement = consumption.restock(db, item_id, user, payload.quantity, payload.notes)
    db.commit()
    return schemas.LedgerMovementOut.model_validate(movement)


@router.get("/consumption", response_model=List[schemas.ConsumptionLogOut])
async def list_consumption(
    item_id: Optional[UUID] = None,
    team_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return consumption.list_consumption_logs(db, item_id=item_id, team_id=team_id)


@router.post("/consumption", response_model=schemas.LedgerMovementOut)
async def record_consumption(
    payload: schemas.ConsumptionLogCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    movement = consumption.record_consumption(db, user, payload)
    db.commit()
    if movement.consumption.team_id:
        await dispatch_effects(
            effects.publish(
                movement.consumption.team_id,
                "consumption_recorded",
                {"consumption_id": str(movement.consumption.id), "item_id": str(movement.item.id)},
            )
        )
    return schemas.LedgerMovementOut.model_validate(movement)


@router.put("/consumption/{log_id}", response_model=schemas.ConsumptionLogOut)
async def update_consumption(
    log_id: UUID,
    payload: schemas.ConsumptionLogUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    log = consumption.update_consumption(db, log_id, user, payload.quantity, payload.notes)
    db.commit()
    db.refresh(log)
    return log


@router.delete("/consumption/{log_id}", status_code=204)
async def delete_consumption(
    log_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    consumption.delete_consumption(db, log_id, user)
    db.commit()
    return Response(status_code=204)


@router.get("/assignments", response_model=List[schemas.InventoryAssignmentOut])
async def list_assignments(
    item_id: Optional[UUID] = None,
    team_id: Optional[UUID] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return consumption.list_assignments(db, item_id=item_id, team_id=team_id, status=status)


@router.post("/assignments/{assignment_id}/release", response_model=schemas.LedgerMovementOut)
async def release_assignment(
    assignment_id: UUID,
    payload: schemas.AssignmentRelease,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    movement = consumption.release_assignment(db, assignment_id, user, payload.notes)
    db.commit()
    await dispatch_effects(
        effects.publish(
            movement.assignment.team_id,
            "assignment_returned",
            {"assignment_id": str(movement.assignment.id), "item_id": str(movement.item.id)},
        )
    )
    return schemas.LedgerMovementOut.model_validate(movement)
