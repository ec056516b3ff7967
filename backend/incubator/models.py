import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


PRIVILEGED_ROLES = ("manager", "director")
USER_ROLES = ("incubator", "mentor", "manager", "director")

REQUEST_PRIORITIES = ("Low", "Medium", "High", "Urgent")
REQUEST_STATUSES = (
    "draft",
    "submitted",
    "pending_review",
    "approved",
    "partially_approved",
    "declined",
    "cancelled",
    "ordered",
    "in_transit",
    "delivered",
    "completed",
    "returned",
)
TERMINAL_REQUEST_STATUSES = ("completed", "cancelled", "declined", "returned")
DELIVERY_STATUSES = ("not_ordered", "ordered", "in_transit", "delivered", "delayed", "cancelled")
REQUEST_ITEM_STATUSES = ("pending", "approved", "distributed", "declined", "delivered")
APPROVAL_STATUSES = ("pending", "approved", "declined", "delegated")
TRANSACTION_TYPES = ("assign", "consume", "return", "adjust", "restock")


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    role = Column(String, default="incubator", nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    teams = relationship("TeamMember", back_populates="user")

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


class Team(Base):
    __tablename__ = "teams"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    company_name = Column(String)
    created_at = Column(DateTime, default=_utcnow)

    members = relationship("TeamMember", back_populates="team")


class TeamMember(Base):
    __tablename__ = "team_members"
    team_id = Column(UUID(as_uuid=True), ForeignKey("teams.id"), primary_key=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    role = Column(String, default="member")

    user = relationship("User", back_populates="teams")
    team = relationship("Team", back_populates="members")


class Project(Base):
    __tablename__ = "projects"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String)
    team_id = Column(UUID(as_uuid=True), ForeignKey("teams.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    # purpose: quantity ledger for stock consulted and mutated by request fulfillment
    # status: active
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String)
    category = Column(String)
    distribution_unit = Column(String)
    is_frequently_distributed = Column(Boolean, default=False, nullable=False)
    total_quantity = Column(Integer, default=0, nullable=False)
    available_quantity = Column(Integer, default=0, nullable=False)
    consumed_quantity = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    assignments = relationship(
        "InventoryAssignment",
        back_populates="item",
        order_by="InventoryAssignment.assigned_at",
    )

    __table_args__ = (
        sa.CheckConstraint("available_quantity >= 0", name="ck_inventory_available_non_negative"),
        sa.CheckConstraint("consumed_quantity >= 0", name="ck_inventory_consumed_non_negative"),
        sa.CheckConstraint("total_quantity >= 0", name="ck_inventory_total_non_negative"),
    )


class InventoryAssignment(Base):
    __tablename__ = "inventory_assignments"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    item_id = Column(UUID(as_uuid=True), ForeignKey("inventory_items.id"), nullable=False, index=True)
    team_id = Column(UUID(as_uuid=True), ForeignKey("teams.id"), nullable=False, index=True)
    request_item_id = Column(UUID(as_uuid=True), ForeignKey("request_items.id"), nullable=True)
    quantity = Column(Integer, nullable=False)
    status = Column(String, default="active", nullable=False)
    assigned_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    assigned_at = Column(DateTime, default=_utcnow, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    notes = Column(Text)

    item = relationship("InventoryItem", back_populates="assignments")

    __table_args__ = (sa.CheckConstraint("quantity > 0", name="ck_assignment_quantity_positive"),)


class ConsumptionLog(Base):
    __tablename__ = "consumption_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    item_id = Column(UUID(as_uuid=True), ForeignKey("inventory_items.id"), nullable=False, index=True)
    team_id = Column(UUID(as_uuid=True), ForeignKey("teams.id"), nullable=True)
    request_item_id = Column(UUID(as_uuid=True), ForeignKey("request_items.id"), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit = Column(String)
    distributed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    distributed_to = Column(String)
    consumption_type = Column(String)
    notes = Column(Text)
    consumed_at = Column(DateTime, default=_utcnow, nullable=False)

    item = relationship("InventoryItem")

    __table_args__ = (sa.CheckConstraint("quantity > 0", name="ck_consumption_quantity_positive"),)


class InventoryTransaction(Base):
    __tablename__ = "inventory_transactions"
    # purpose: one immutable row per ledger mutation with before/after available quantity
    # status: active
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    item_id = Column(UUID(as_uuid=True), ForeignKey("inventory_items.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    performed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    reference_type = Column(String)
    reference_id = Column(UUID(as_uuid=True))
    notes = Column(Text)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class MaterialRequest(Base):
    __tablename__ = "material_requests"

    # purpose: team material request with lifecycle, delivery tracking and approval ladder
    # status: active
    # depends_on: teams, users, projects

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_number = Column(String, unique=True, nullable=False, index=True)
    team_id = Column(UUID(as_uuid=True), ForeignKey("teams.id"), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    priority = Column(String, default="Medium", nullable=False)
    urgency_reason = Column(String)
    status = Column(String, default="draft", nullable=False, index=True)
    delivery_status = Column(String, default="not_ordered", nullable=False)
    is_consumable_request = Column(Boolean, default=False, nullable=False)
    requires_quick_approval = Column(Boolean, default=False, nullable=False)
    requested_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    reviewed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approved_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    current_approver_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approval_chain = Column(JSON, nullable=True)
    required_by = Column(DateTime, nullable=True)
    expected_delivery = Column(DateTime, nullable=True)
    delivery_address = Column(String)
    delivery_notes = Column(Text)
    notes = Column(Text)
    internal_notes = Column(Text)
    requested_at = Column(DateTime, default=_utcnow, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    ordered_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    team = relationship("Team")
    requester = relationship("User", foreign_keys=[requested_by])
    items = relationship(
        "RequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItem.position",
    )
    approvals = relationship(
        "RequestApproval",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestApproval.approval_level",
    )
    comments = relationship(
        "RequestComment",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestComment.created_at",
    )
    history = relationship(
        "RequestHistory",
        primaryjoin="MaterialRequest.id == foreign(RequestHistory.request_id)",
        order_by="RequestHistory.sequence",
        viewonly=True,
    )


class RequestItem(Base):
    __tablename__ = "request_items"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(
        UUID(as_uuid=True),
        ForeignKey("material_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, default=0, nullable=False)
    inventory_item_id = Column(UUID(as_uuid=True), ForeignKey("inventory_items.id"), nullable=True)
    item_name = Column(String, nullable=False)
    description = Column(String)
    quantity = Column(Integer, nullable=False)
    unit = Column(String)
    is_consumable = Column(Boolean, default=False, nullable=False)
    status = Column(String, default="pending", nullable=False)
    approved_quantity = Column(Integer, nullable=True)
    distributed_quantity = Column(Integer, nullable=True)
    distribution_date = Column(DateTime, nullable=True)
    notes = Column(Text)
    created_at = Column(DateTime, default=_utcnow)

    request = relationship("MaterialRequest", back_populates="items")
    inventory_item = relationship("InventoryItem")

    __table_args__ = (
        sa.CheckConstraint("quantity > 0", name="ck_request_item_quantity_positive"),
        sa.CheckConstraint(
            "approved_quantity IS NULL OR approved_quantity <= quantity",
            name="ck_request_item_approved_within_requested",
        ),
        sa.CheckConstraint(
            "distributed_quantity IS NULL OR distributed_quantity <= quantity",
            name="ck_request_item_distributed_within_requested",
        ),
    )


class RequestApproval(Base):
    __tablename__ = "request_approvals"

    # purpose: one ordered sign-off level of a material request approval ladder
    # status: active
    # depends_on: material_requests

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(
        UUID(as_uuid=True),
        ForeignKey("material_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    approval_level = Column(Integer, nullable=False)
    approver_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    delegated_to_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    status = Column(String, default="pending", nullable=False)
    decided_at = Column(DateTime, nullable=True)
    comments = Column(Text)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    request = relationship("MaterialRequest", back_populates="approvals")
    approver = relationship("User", foreign_keys=[approver_id])
    delegated_to = relationship("User", foreign_keys=[delegated_to_id])

    __table_args__ = (
        sa.UniqueConstraint("request_id", "approval_level"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'declined', 'delegated')",
            name="ck_request_approvals_status",
        ),
    )


class RequestHistory(Base):
    __tablename__ = "request_history"

    # purpose: append-only trail of material request transitions
    # status: active
    # request_id carries no foreign key so entries outlive a deleted request

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    action = Column(String, nullable=False)
    performed_by = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    notes = Column(Text)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("request_id", "sequence"),
    )


@event.listens_for(RequestHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("request history entries are immutable")


@event.listens_for(RequestHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("request history entries cannot be deleted")


class RequestComment(Base):
    __tablename__ = "request_comments"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(
        UUID(as_uuid=True),
        ForeignKey("material_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    comment = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    request = relationship("MaterialRequest", back_populates="comments")
    user = relationship("User")
