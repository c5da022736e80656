"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates all tables for the rental engine:
- Rentals
- Disputes, activities and resolution proposals
- Refunds and payouts
- Notification outbox
- Audit logs
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== RENTALS ====================
    op.create_table(
        "rentals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("item_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("item_title", sa.String(200), nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("owner_name", sa.String(200)),
        sa.Column("renter_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("renter_name", sa.String(200)),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_price", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("security_deposit", sa.Integer, server_default="0"),
        sa.Column("deposit_status", sa.String(20), server_default="none"),
        sa.Column("deposit_claimed_amount", sa.Integer, server_default="0"),
        sa.Column("deposit_id", sa.String(100)),
        sa.Column("insurance_tier", sa.String(30)),
        sa.Column("insurance_premium", sa.Integer, server_default="0"),
        sa.Column("insurance_coverage_max", sa.Integer, server_default="0"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending", index=True),
        sa.Column("payment_status", sa.String(20), server_default="unpaid"),
        sa.Column("payment_reference", sa.String(100)),
        sa.Column("renter_confirmed_return", sa.Boolean, server_default=sa.false()),
        sa.Column("payout_eligible_at", sa.DateTime(timezone=True)),
        sa.Column("payout_frozen", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("owner_payout_account", sa.String(100)),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("pickup_photo_owner", sa.Text),
        sa.Column("pickup_photo_renter", sa.Text),
        sa.Column("return_photo_owner", sa.Text),
        sa.Column("return_photo_renter", sa.Text),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("declined_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("completion_requested_at", sa.DateTime(timezone=True)),
        sa.Column("return_confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # A frozen payout is only meaningful while the payout is pending
        sa.CheckConstraint(
            "NOT payout_frozen OR status = 'completed_pending_payout'",
            name="ck_rentals_freeze_pending_payout",
        ),
    )
    op.create_index(
        "ix_rentals_settlement_queue",
        "rentals",
        ["status", "payout_frozen", "payout_eligible_at"],
    )

    # ==================== DISPUTES ====================
    op.create_table(
        "disputes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("rental_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("rentals.id"), nullable=False, index=True),
        sa.Column("item_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("item_title", sa.String(200)),
        sa.Column("reporter_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("reporter_name", sa.String(200)),
        sa.Column("reporter_role", sa.String(10), nullable=False),
        sa.Column("accused_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("accused_name", sa.String(200)),
        sa.Column("dispute_type", sa.String(30), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("photos", postgresql.JSONB),
        sa.Column("estimated_cost", sa.Integer),
        sa.Column("status", sa.String(30), nullable=False, server_default="awaiting_response", index=True),
        sa.Column("counter_response", sa.Text),
        sa.Column("counter_response_photos", postgresql.JSONB),
        sa.Column("counter_response_at", sa.DateTime(timezone=True)),
        sa.Column("escalated_at", sa.DateTime(timezone=True)),
        sa.Column("escalation_reason", sa.Text),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.String(30)),
        sa.Column("resolution_notes", sa.Text),
        sa.Column("admin_notes", sa.Text),
        sa.Column("refund_amount", sa.Integer, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "dispute_activities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=False, index=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("activity_type", sa.String(30), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_name", sa.String(200)),
        sa.Column("content", sa.Text),
        sa.Column("photos", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("dispute_id", "sequence", name="uq_dispute_activities_sequence"),
    )

    op.create_table(
        "resolution_proposals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=False, index=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("proposed_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("proposed_by_name", sa.String(200)),
        sa.Column("resolution_type", sa.String(30), nullable=False),
        sa.Column("amount", sa.Integer),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("responded_by", postgresql.UUID(as_uuid=True)),
        sa.Column("responded_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("dispute_id", "sequence", name="uq_resolution_proposals_sequence"),
    )

    # ==================== MONEY ====================
    op.create_table(
        "refunds",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("rental_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("rentals.id"), nullable=False, index=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), index=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("user_name", sa.String(200)),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("payment_reference", sa.String(100)),
        sa.Column("processor_refund_id", sa.String(100)),
        sa.Column("processed_by", postgresql.UUID(as_uuid=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
    )

    op.create_table(
        "payouts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("rental_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("rentals.id"), nullable=False, unique=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("gross_amount", sa.Integer, nullable=False),
        sa.Column("platform_fee", sa.Integer, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("deposit_claim_amount", sa.Integer, server_default="0"),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("destination", sa.String(100)),
        sa.Column("transfer_reference", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="completed"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== NOTIFICATIONS ====================
    op.create_table(
        "notification_outbox",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    # ==================== AUDIT ====================
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("actor_role", sa.String(20)),
        sa.Column("action", sa.String(100), nullable=False, index=True),
        sa.Column("resource_type", sa.String(50), nullable=False, index=True),
        sa.Column("resource_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("old_values", postgresql.JSONB),
        sa.Column("new_values", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("audit_logs")
    op.drop_table("notification_outbox")
    op.drop_table("payouts")
    op.drop_table("refunds")
    op.drop_table("resolution_proposals")
    op.drop_table("dispute_activities")
    op.drop_table("disputes")
    op.drop_index("ix_rentals_settlement_queue", table_name="rentals")
    op.drop_table("rentals")
