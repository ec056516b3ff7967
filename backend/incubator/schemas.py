from datetime import datetime
from typing import Optional, Any, List
from pydantic import BaseModel, EmailStr, ConfigDict, Field
from uuid import UUID


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str] = None
    role: str
    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TeamOut(BaseModel):
    id: UUID
    name: str
    company_name: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class RequestItemIn(BaseModel):
    item_name: Optional[str] = None
    inventory_item_id: Optional[UUID] = None
    description: Optional[str] = None
    quantity: int
    unit: Optional[str] = None
    is_consumable: bool = False
    notes: Optional[str] = None


class RequestItemOut(BaseModel):
    id: UUID
    position: int
    inventory_item_id: Optional[UUID] = None
    item_name: str
    description: Optional[str] = None
    quantity: int
    unit: Optional[str] = None
    is_consumable: bool
    status: str
    approved_quantity: Optional[int] = None
    distributed_quantity: Optional[int] = None
    distribution_date: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class MaterialRequestCreate(BaseModel):
    team_id: UUID
    project_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    priority: str = "Medium"
    urgency_reason: Optional[str] = None
    is_consumable_request: bool = False
    requires_quick_approval: bool = False
    required_by: Optional[datetime] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    items: List[RequestItemIn] = Field(default_factory=list)
    approval_chain: List[UUID] = Field(default_factory=list)


class MaterialRequestUpdate(BaseModel):
    project_id: Optional[UUID] = None
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    urgency_reason: Optional[str] = None
    required_by: Optional[datetime] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[List[RequestItemIn]] = None


class RequestApprovalOut(BaseModel):
    id: UUID
    approval_level: int
    approver_id: UUID
    delegated_to_id: Optional[UUID] = None
    status: str
    decided_at: Optional[datetime] = None
    comments: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class MaterialRequestOut(BaseModel):
    id: UUID
    request_number: str
    team_id: UUID
    project_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    priority: str
    urgency_reason: Optional[str] = None
    status: str
    delivery_status: str
    is_consumable_request: bool
    requires_quick_approval: bool
    requested_by: UUID
    reviewed_by: Optional[UUID] = None
    approved_by: Optional[UUID] = None
    current_approver_id: Optional[UUID] = None
    required_by: Optional[datetime] = None
    delivery_address: Optional[str] = None
    delivery_notes: Optional[str] = None
    notes: Optional[str] = None
    requested_at: datetime
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    ordered_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[RequestItemOut] = []
    approvals: List[RequestApprovalOut] = []
    model_config = ConfigDict(from_attributes=True)


class ItemOutcomeOut(BaseModel):
    request_item_id: UUID
    outcome: str
    quantity: int = 0
    detail: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class RequestActionOut(BaseModel):
    request: MaterialRequestOut
    outcomes: List[ItemOutcomeOut] = []


class RequestCancel(BaseModel):
    reason: Optional[str] = None


class RequestStatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


class DeliveryStatusUpdate(BaseModel):
    delivery_status: str
    notes: Optional[str] = None


class ApprovalDecision(BaseModel):
    comments: Optional[str] = None


class ApprovalDelegation(BaseModel):
    delegate_id: UUID
    comments: Optional[str] = None


class RequestHistoryOut(BaseModel):
    id: UUID
    request_id: UUID
    sequence: int
    action: str
    performed_by: Optional[UUID] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    notes: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class RequestCommentCreate(BaseModel):
    comment: str
    is_internal: bool = False


class RequestCommentUpdate(BaseModel):
    comment: str


class RequestCommentOut(BaseModel):
    id: UUID
    request_id: UUID
    user_id: UUID
    comment: str
    is_internal: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class InventoryItemCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    distribution_unit: Optional[str] = None
    is_frequently_distributed: bool = False
    initial_quantity: int = 0


class InventoryItemOut(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    distribution_unit: Optional[str] = None
    is_frequently_distributed: bool
    total_quantity: int
    available_quantity: int
    consumed_quantity: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class RestockIn(BaseModel):
    quantity: int
    notes: Optional[str] = None


class InventoryAssignmentOut(BaseModel):
    id: UUID
    item_id: UUID
    team_id: UUID
    request_item_id: Optional[UUID] = None
    quantity: int
    status: str
    assigned_by: Optional[UUID] = None
    assigned_at: datetime
    returned_at: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class AssignmentRelease(BaseModel):
    notes: Optional[str] = None


class ConsumptionLogCreate(BaseModel):
    item_id: UUID
    team_id: Optional[UUID] = None
    quantity: int
    unit: Optional[str] = None
    distributed_to: Optional[str] = None
    consumption_type: Optional[str] = None
    notes: Optional[str] = None


class ConsumptionLogUpdate(BaseModel):
    quantity: int
    notes: Optional[str] = None


class ConsumptionLogOut(BaseModel):
    id: UUID
    item_id: UUID
    team_id: Optional[UUID] = None
    request_item_id: Optional[UUID] = None
    quantity: int
    unit: Optional[str] = None
    distributed_by: Optional[UUID] = None
    distributed_to: Optional[str] = None
    consumption_type: Optional[str] = None
    notes: Optional[str] = None
    consumed_at: datetime
    model_config = ConfigDict(from_attributes=True)


class InventoryTransactionOut(BaseModel):
    id: UUID
    item_id: UUID
    transaction_type: str
    quantity: int
    previous_quantity: int
    new_quantity: int
    performed_by: Optional[UUID] = None
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class LedgerMovementOut(BaseModel):
    item: InventoryItemOut
    transaction: InventoryTransactionOut
    assignment: Optional[InventoryAssignmentOut] = None
    consumption: Optional[ConsumptionLogOut] = None
    model_config = ConfigDict(from_attributes=True)
