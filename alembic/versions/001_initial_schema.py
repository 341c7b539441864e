"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates all initial tables for the Coachbook platform:
- Users, coach profiles and group pricing tiers
- Bookings and their per-kind detail tables
- Group participants
- Payment intent records
- Audit (state transitions, admin actions)
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


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _primary_payment_columns() -> list[sa.Column]:
    return [
        sa.Column("payment_status", sa.String(30), nullable=False, server_default="awaiting_client_payment", index=True),
        sa.Column("payment_intent_id", sa.String(255), unique=True),
        sa.Column("payment_due_at", sa.DateTime(timezone=True), index=True),
        sa.Column("payment_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("payment_final_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("authorized_at", sa.DateTime(timezone=True)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    """Create all database tables."""

    # ==================== USERS ====================
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="client"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("timezone", sa.String(64), server_default="UTC"),
        sa.Column("platform_fee_percent", sa.Numeric(5, 2)),
        sa.Column("suspended_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    op.create_table(
        "coach_profiles",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("hourly_rate_cents", sa.Integer, nullable=False),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payout_account_id", sa.String(255), unique=True),
        sa.Column("payouts_enabled", sa.Boolean, server_default=sa.false()),
        sa.Column("allows_private_groups", sa.Boolean, server_default=sa.true()),
        sa.Column("lessons_completed", sa.Integer, server_default="0"),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )

    op.create_table(
        "group_pricing_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("coach_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("min_participants", sa.Integer, nullable=False),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column("price_per_person_cents", sa.Integer, nullable=False),
        *_timestamps(),
    )

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("coach_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("booking_type", sa.String(20), nullable=False),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("scheduled_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer, nullable=False),
        sa.Column("location", postgresql.JSONB, nullable=False),
        sa.Column("client_message", sa.Text),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("fulfillment_status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), index=True),
        sa.Column("coach_responded_at", sa.DateTime(timezone=True)),
        sa.Column("decline_reason", sa.Text),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("refund_amount_cents", sa.Integer, server_default="0"),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("disputed_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint(
            "booking_type IN ('individual', 'private_group', 'public_group')",
            name="ck_bookings_booking_type",
        ),
    )
    op.create_index("ix_bookings_coach_window", "bookings", ["coach_id", "scheduled_start_at", "scheduled_end_at"])

    op.create_table(
        "individual_booking_details",
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("coach_rate_cents", sa.Integer, nullable=False),
        sa.Column("client_pays_cents", sa.Integer, nullable=False),
        sa.Column("platform_fee_cents", sa.Integer, nullable=False),
        sa.Column("processor_fee_cents", sa.Integer, nullable=False),
        sa.Column("coach_payout_cents", sa.Integer, nullable=False),
        *_primary_payment_columns(),
        sa.Column("client_confirmed_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "private_group_booking_details",
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("organizer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("price_per_person_cents", sa.Integer, nullable=False),
        sa.Column("total_gross_cents", sa.Integer, nullable=False),
        sa.Column("platform_fee_cents", sa.Integer, nullable=False),
        sa.Column("processor_fee_cents", sa.Integer, nullable=False),
        sa.Column("coach_payout_cents", sa.Integer, nullable=False),
        sa.Column("min_participants", sa.Integer, nullable=False),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column("current_participants", sa.Integer, nullable=False, server_default="0"),
        sa.Column("captured_participants", sa.Integer, nullable=False, server_default="0"),
        *_primary_payment_columns(),
        sa.Column("organizer_confirmed_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("captured_participants <= current_participants", name="ck_private_group_captured_le_current"),
        sa.CheckConstraint("current_participants <= max_participants", name="ck_private_group_current_le_max"),
    )

    op.create_table(
        "public_group_lesson_details",
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("price_per_person_cents", sa.Integer, nullable=False),
        sa.Column("min_participants", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column("current_participants", sa.Integer, nullable=False, server_default="0"),
        sa.Column("authorized_participants", sa.Integer, nullable=False, server_default="0"),
        sa.Column("captured_participants", sa.Integer, nullable=False, server_default="0"),
        sa.Column("capacity_status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("coach_payout_cents", sa.Integer),
        sa.Column("transfer_id", sa.String(255)),
        sa.CheckConstraint("captured_participants <= current_participants", name="ck_public_group_captured_le_current"),
        sa.CheckConstraint("current_participants <= max_participants", name="ck_public_group_current_le_max"),
        sa.CheckConstraint(
            "authorized_participants >= 0 AND captured_participants >= 0",
            name="ck_public_group_counters_non_negative",
        ),
    )

    op.create_table(
        "booking_participants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("is_organizer", sa.Boolean, server_default=sa.false()),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="awaiting_coach", index=True),
        sa.Column("payment_intent_id", sa.String(255), unique=True),
        sa.Column("amount_cents", sa.Integer),
        sa.Column("expires_at", sa.DateTime(timezone=True), index=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", "user_id", name="uq_booking_participant"),
    )

    # ==================== PAYMENTS ====================
    op.create_table(
        "booking_payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("payment_intent_id", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("participant_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("capture_method", sa.String(20), server_default="manual"),
        sa.Column("refunded_amount_cents", sa.Integer, server_default="0"),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )

    # ==================== AUDIT ====================
    op.create_table(
        "booking_state_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("participant_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("field_name", sa.String(50), nullable=False),
        sa.Column("old_value", sa.String(50)),
        sa.Column("new_value", sa.String(50), nullable=False),
        sa.Column("changed_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id")),
        sa.Column("reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    op.create_table(
        "admin_actions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("admin_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("action_type", sa.String(50), nullable=False, index=True),
        sa.Column("target_user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id")),
        sa.Column("target_booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id")),
        sa.Column("notes", sa.Text),
        sa.Column("details", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("admin_actions")
    op.drop_table("booking_state_transitions")
    op.drop_table("booking_payments")
    op.drop_table("booking_participants")
    op.drop_table("public_group_lesson_details")
    op.drop_table("private_group_booking_details")
    op.drop_table("individual_booking_details")
    op.drop_index("ix_bookings_coach_window", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("group_pricing_tiers")
    op.drop_table("coach_profiles")
    op.drop_table("users")
