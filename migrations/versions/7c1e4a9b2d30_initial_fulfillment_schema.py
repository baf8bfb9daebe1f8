"""initial_fulfillment_schema

Create users, aid_requests, contributions, allocations, delivery_routes,
logistics, notifications, scheduled_jobs, email_logs and audit_logs.

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d30"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="recipient"),
            sa.Column("permissions", sa.JSON(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "aid_requests" not in existing_tables:
        op.create_table(
            "aid_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=50), nullable=True),
            sa.Column("quantity_needed", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
            sa.Column("funding_status", sa.String(length=30), nullable=False, server_default="unfunded"),
            sa.Column("assigned_supplier_id", sa.Integer(), nullable=True),
            sa.Column("is_flagged_for_review", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["assigned_supplier_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_aid_requests_user_id", "aid_requests", ["user_id"])
        op.create_index("ix_aid_requests_assigned_supplier_id", "aid_requests", ["assigned_supplier_id"])
        op.create_index("idx_aid_requests_status_created", "aid_requests", ["status", "created_at"])
        op.create_index("idx_aid_requests_flagged", "aid_requests", ["is_flagged_for_review"])

    if "contributions" not in existing_tables:
        op.create_table(
            "contributions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("supplier_id", sa.Integer(), nullable=False),
            sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
            sa.Column("amount_value", sa.Numeric(12, 2), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="committed"),
            sa.Column("recede_requested_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("recede_requested_by", sa.Integer(), nullable=True),
            sa.Column("recede_approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("recede_approved_by", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["request_id"], ["aid_requests.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["supplier_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["recede_requested_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["recede_approved_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_contributions_supplier_id", "contributions", ["supplier_id"])
        op.create_index("idx_contributions_request_status", "contributions", ["request_id", "status"])

    if "allocations" not in existing_tables:
        op.create_table(
            "allocations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("allocated_by", sa.Integer(), nullable=True),
            sa.Column("quantity_allocated", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Pending"),
            sa.Column("actual_delivery_date", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["request_id"], ["aid_requests.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["allocated_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_allocations_request_id", "allocations", ["request_id"])

    if "delivery_routes" not in existing_tables:
        op.create_table(
            "delivery_routes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("route_name", sa.String(length=255), nullable=False),
            sa.Column("allocation_id", sa.Integer(), nullable=True),
            sa.Column("driver_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Scheduled"),
            sa.Column("destination_region", sa.String(length=100), nullable=True),
            sa.Column("destination_city", sa.String(length=100), nullable=True),
            sa.Column("destination_address", sa.String(length=500), nullable=True),
            sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_arrival_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("route_notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["allocation_id"], ["allocations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["driver_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_delivery_routes_allocation_id", "delivery_routes", ["allocation_id"])
        op.create_index("ix_delivery_routes_driver_id", "delivery_routes", ["driver_id"])

    if "logistics" not in existing_tables:
        op.create_table(
            "logistics",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("delivery_route_id", sa.Integer(), nullable=False),
            sa.Column("allocation_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Scheduled"),
            sa.Column("tracking_number", sa.String(length=40), nullable=False),
            sa.Column("location_updates", sa.JSON(), nullable=True),
            sa.Column("last_location_update", sa.DateTime(timezone=True), nullable=True),
            sa.Column("delivery_notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["delivery_route_id"], ["delivery_routes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["allocation_id"], ["allocations.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("delivery_route_id"),
            sa.UniqueConstraint("tracking_number"),
        )
        op.create_index("ix_logistics_allocation_id", "logistics", ["allocation_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_user_id", "notifications", ["recipient_user_id"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("run_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("notification_id", sa.Integer(), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs",
        "email_logs",
        "scheduled_jobs",
        "notifications",
        "logistics",
        "delivery_routes",
        "allocations",
        "contributions",
        "aid_requests",
        "users",
    ):
        op.drop_table(table)
