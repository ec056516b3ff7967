"""Create material request lifecycle and inventory ledger tables."""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def _uuid(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), **kwargs)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create identity, ledger and request workflow tables."""

    op.create_table(
        "users",
        _uuid("id", primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="incubator"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "teams",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "team_members",
        _uuid("team_id", sa.ForeignKey("teams.id"), primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("role", sa.String(), nullable=True, server_default="member"),
    )
    op.create_table(
        "projects",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        _uuid("team_id", sa.ForeignKey("teams.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "inventory_items",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("distribution_unit", sa.String(), nullable=True),
        sa.Column("is_frequently_distributed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consumed_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("available_quantity >= 0", name="ck_inventory_available_non_negative"),
        sa.CheckConstraint("consumed_quantity >= 0", name="ck_inventory_consumed_non_negative"),
        sa.CheckConstraint("total_quantity >= 0", name="ck_inventory_total_non_negative"),
    )
    op.create_table(
        "material_requests",
        _uuid("id", primary_key=True),
        sa.Column("request_number", sa.String(), nullable=False),
        _uuid("team_id", sa.ForeignKey("teams.id"), nullable=False),
        _uuid("project_id", sa.ForeignKey("projects.id"), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(), nullable=False, server_default="Medium"),
        sa.Column("urgency_reason", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("delivery_status", sa.String(), nullable=False, server_default="not_ordered"),
        sa.Column("is_consumable_request", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_quick_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("requested_by", sa.ForeignKey("users.id"), nullable=False),
        _uuid("reviewed_by", sa.ForeignKey("users.id"), nullable=True),
        _uuid("approved_by", sa.ForeignKey("users.id"), nullable=True),
        _uuid("current_approver_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approval_chain", sa.JSON(), nullable=True),
        sa.Column("required_by", sa.DateTime(), nullable=True),
        sa.Column("expected_delivery", sa.DateTime(), nullable=True),
        sa.Column("delivery_address", sa.String(), nullable=True),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("ordered_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_material_requests_request_number", "material_requests", ["request_number"], unique=True
    )
    op.create_index("ix_material_requests_team_id", "material_requests", ["team_id"])
    op.create_index("ix_material_requests_status", "material_requests", ["status"])

    op.create_table(
        "request_items",
        _uuid("id", primary_key=True),
        _uuid(
            "request_id",
            sa.ForeignKey("material_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        _uuid("inventory_item_id", sa.ForeignKey("inventory_items.id"), nullable=True),
        sa.Column("item_name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("is_consumable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("approved_quantity", sa.Integer(), nullable=True),
        sa.Column("distributed_quantity", sa.Integer(), nullable=True),
        sa.Column("distribution_date", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
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
    op.create_index("ix_request_items_request_id", "request_items", ["request_id"])

    op.create_table(
        "inventory_assignments",
        _uuid("id", primary_key=True),
        _uuid("item_id", sa.ForeignKey("inventory_items.id"), nullable=False),
        _uuid("team_id", sa.ForeignKey("teams.id"), nullable=False),
        _uuid("request_item_id", sa.ForeignKey("request_items.id"), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _uuid("assigned_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("returned_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_assignment_quantity_positive"),
    )
    op.create_index("ix_inventory_assignments_item_id", "inventory_assignments", ["item_id"])
    op.create_index("ix_inventory_assignments_team_id", "inventory_assignments", ["team_id"])

    op.create_table(
        "consumption_logs",
        _uuid("id", primary_key=True),
        _uuid("item_id", sa.ForeignKey("inventory_items.id"), nullable=False),
        _uuid("team_id", sa.ForeignKey("teams.id"), nullable=True),
        _uuid("request_item_id", sa.ForeignKey("request_items.id"), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        _uuid("distributed_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("distributed_to", sa.String(), nullable=True),
        sa.Column("consumption_type", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("consumed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("quantity > 0", name="ck_consumption_quantity_positive"),
    )
    op.create_index("ix_consumption_logs_item_id", "consumption_logs", ["item_id"])

    op.create_table(
        "inventory_transactions",
        _uuid("id", primary_key=True),
        _uuid("item_id", sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("previous_quantity", sa.Integer(), nullable=False),
        sa.Column("new_quantity", sa.Integer(), nullable=False),
        _uuid("performed_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        _uuid("reference_id", nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_inventory_transactions_item_id", "inventory_transactions", ["item_id"])

    op.create_table(
        "request_approvals",
        _uuid("id", primary_key=True),
        _uuid(
            "request_id",
            sa.ForeignKey("material_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("approval_level", sa.Integer(), nullable=False),
        _uuid("approver_id", sa.ForeignKey("users.id"), nullable=False),
        _uuid("delegated_to_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("request_id", "approval_level"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'declined', 'delegated')",
            name="ck_request_approvals_status",
        ),
    )
    op.create_index("ix_request_approvals_request_id", "request_approvals", ["request_id"])

    op.create_table(
        "request_history",
        _uuid("id", primary_key=True),
        _uuid("request_id", nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        _uuid("performed_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("request_id", "sequence"),
    )
    op.create_index("ix_request_history_request_id", "request_history", ["request_id"])

    op.create_table(
        "request_comments",
        _uuid("id", primary_key=True),
        _uuid(
            "request_id",
            sa.ForeignKey("material_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_request_comments_request_id", "request_comments", ["request_id"])


def downgrade() -> None:
    """Drop request workflow and ledger tables."""

    op.drop_index("ix_request_comments_request_id", table_name="request_comments")
    op.drop_table("request_comments")
    op.drop_index("ix_request_history_request_id", table_name="request_history")
    op.drop_table("request_history")
    op.drop_index("ix_request_approvals_request_id", table_name="request_approvals")
    op.drop_table("request_approvals")
    op.drop_index("ix_inventory_transactions_item_id", table_name="inventory_transactions")
    op.drop_table("inventory_transactions")
    op.drop_index("ix_consumption_logs_item_id", table_name="consumption_logs")
    op.drop_table("consumption_logs")
    op.drop_index("ix_inventory_assignments_team_id", table_name="inventory_assignments")
    op.drop_index("ix_inventory_assignments_item_id", table_name="inventory_assignments")
    op.drop_table("inventory_assignments")
    op.drop_index("ix_request_items_request_id", table_name="request_items")
    op.drop_table("request_items")
    op.drop_index("ix_material_requests_status", table_name="material_requests")
    op.drop_index("ix_material_requests_team_id", table_name="material_requests")
    op.drop_index("ix_material_requests_request_number", table_name="material_requests")
    op.drop_table("material_requests")
    op.drop_table("inventory_items")
    op.drop_table("projects")
    op.drop_table("team_members")
    op.drop_table("teams")
    op.drop_table("users")
