"""Create tenant billing, cap history, suspension and lifecycle tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2025-01-06

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("admin_override", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("free_activation", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("paid_subscription_despite_free", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("custom_rate", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("discount_percent", sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column("membership_cap", sa.Integer(), nullable=True),
        sa.Column("cap_enforced", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("cap_set_at", sa.DateTime(), nullable=True),
        sa.Column("cap_set_by", sa.Integer(), nullable=True),
        sa.Column("status_override", sa.String(length=20), nullable=True),
        sa.Column("last_admission_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_tenants_id", "tenants", ["id"], unique=False)
    op.create_index("idx_tenant_status_override", "tenants", ["status_override"], unique=False)

    # Create billing_records table
    op.create_table(
        "billing_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("billing_mode", sa.String(length=32), nullable=False, server_default="per_member"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("billing_cycle", sa.String(length=32), nullable=False, server_default="yearly"),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_per_member", sa.Numeric(precision=10, scale=2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(precision=12, scale=2), nullable=False, server_default="0"),
        sa.Column("billed_cap", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("gateway_customer_id", sa.String(length=128), nullable=True),
        sa.Column("gateway_subscription_id", sa.String(length=128), nullable=True),
        sa.Column("last_payment_at", sa.DateTime(), nullable=True),
        sa.Column("next_payment_at", sa.DateTime(), nullable=True),
        sa.Column("created_via", sa.String(length=64), nullable=False, server_default="onboarding"),
        sa.Column("superseded_at", sa.DateTime(), nullable=True),
        sa.Column("superseded_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["superseded_by_id"], ["billing_records.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_records_id", "billing_records", ["id"], unique=False)
    op.create_index("ix_billing_records_tenant_id", "billing_records", ["tenant_id"], unique=False)
    op.create_index("ix_billing_records_gateway_customer_id", "billing_records", ["gateway_customer_id"], unique=False)
    op.create_index(
        "ix_billing_records_gateway_subscription_id", "billing_records", ["gateway_subscription_id"], unique=False
    )
    op.create_index("idx_billing_tenant_created", "billing_records", ["tenant_id", "created_at"], unique=False)
    op.create_index("idx_billing_status", "billing_records", ["status"], unique=False)

    # Create cap_change_entries table
    op.create_table(
        "cap_change_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("previous_cap", sa.Integer(), nullable=True),
        sa.Column("new_cap", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(length=20), nullable=False, server_default="set"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("active_member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate", sa.Numeric(precision=10, scale=2), nullable=False, server_default="0"),
        sa.Column("additional_cost", sa.Numeric(precision=12, scale=2), nullable=False, server_default="0"),
        sa.Column("charge_status", sa.String(length=20), nullable=False, server_default="not_required"),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cap_change_entries_id", "cap_change_entries", ["id"], unique=False)
    op.create_index("idx_cap_change_tenant", "cap_change_entries", ["tenant_id", "id"], unique=False)
    op.create_index("idx_cap_change_charge_status", "cap_change_entries", ["charge_status"], unique=False)

    # Create rate_change_entries table
    op.create_table(
        "rate_change_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("previous_rate", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("new_rate", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("billed_members", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("proration_amount", sa.Numeric(precision=12, scale=2), nullable=False, server_default="0"),
        sa.Column("proration_status", sa.String(length=20), nullable=False, server_default="not_required"),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("cancelled_subscription_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rate_change_entries_id", "rate_change_entries", ["id"], unique=False)
    op.create_index("idx_rate_change_tenant", "rate_change_entries", ["tenant_id", "id"], unique=False)

    # Create suspension_events table
    op.create_table(
        "suspension_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("previous_status", sa.String(length=20), nullable=True),
        sa.Column("affected_member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_suspension_events_id", "suspension_events", ["id"], unique=False)
    op.create_index("idx_suspension_tenant", "suspension_events", ["tenant_id", "id"], unique=False)

    # Create members table
    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="student"),
        sa.Column("enrollment_status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("is_alumni", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("billing_exempt", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("graduation_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_index("ix_members_id", "members", ["id"], unique=False)
    op.create_index(
        "idx_member_tenant_role_status", "members", ["tenant_id", "role", "enrollment_status"], unique=False
    )

    # Create member_lifecycle_records table (member_id has no FK so orphans stay visible)
    op.create_table(
        "member_lifecycle_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("graduated_at", sa.DateTime(), nullable=False),
        sa.Column("grace_period_ends_at", sa.DateTime(), nullable=True),
        sa.Column("notified_about_deletion", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("notified_at", sa.DateTime(), nullable=True),
        sa.Column("verification_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("alumni_status", sa.String(length=32), nullable=False, server_default="graduated"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("member_id"),
    )
    op.create_index("ix_member_lifecycle_records_id", "member_lifecycle_records", ["id"], unique=False)
    op.create_index("idx_lifecycle_grace_end", "member_lifecycle_records", ["grace_period_ends_at"], unique=False)
    op.create_index("idx_lifecycle_tenant", "member_lifecycle_records", ["tenant_id"], unique=False)

    # Create processed_gateway_events table
    op.create_table(
        "processed_gateway_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=255), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_processed_gateway_events_id", "processed_gateway_events", ["id"], unique=False)
    op.create_index("ix_processed_gateway_events_event_id", "processed_gateway_events", ["event_id"], unique=True)


def downgrade() -> None:
    op.drop_table("processed_gateway_events")
    op.drop_table("member_lifecycle_records")
    op.drop_table("members")
    op.drop_table("suspension_events")
    op.drop_table("rate_change_entries")
    op.drop_table("cap_change_entries")
    op.drop_table("billing_records")
    op.drop_table("tenants")
