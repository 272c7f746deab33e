"""Create notifications and scheduled_reminders tables.

Revision ID: 0001
Revises: -
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("recipient", sa.String(320), nullable=False),
        sa.Column("recipient_id", sa.String(128), nullable=False),
        sa.Column(
            "priority", sa.String(16), nullable=False, server_default="normal"
        ),
        sa.Column(
            "status", sa.String(16), nullable=False, server_default="pending"
        ),
        sa.Column("subject", sa.Text, nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("template_ref", sa.String(128), nullable=True),
        sa.Column(
            "variables", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_message_id", sa.String(256), nullable=True),
        sa.Column("cost", sa.Numeric(12, 6), nullable=True),
        sa.Column("provider", sa.String(64), nullable=True),
        sa.Column("provider_response", JSONB, nullable=True),
        sa.Column(
            "metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        *_timestamps(),
    )
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
    op.create_index("ix_notifications_status", "notifications", ["status"])
    op.create_index("ix_notifications_scheduled_at", "notifications", ["scheduled_at"])
    op.create_index(
        "ix_notifications_external_message_id",
        "notifications",
        ["external_message_id"],
    )

    op.create_table(
        "scheduled_reminders",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("booking_ref", sa.String(128), nullable=False),
        sa.Column("reminder_type", sa.String(8), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("service_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recipient_email", sa.String(320), nullable=True),
        sa.Column("recipient_phone", sa.String(32), nullable=True),
        sa.Column(
            "payload", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column(
            "priority", sa.String(16), nullable=False, server_default="normal"
        ),
        sa.Column(
            "status", sa.String(16), nullable=False, server_default="scheduled"
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_scheduled_reminders_booking_ref", "scheduled_reminders", ["booking_ref"]
    )
    op.create_index(
        "ix_scheduled_reminders_scheduled_date",
        "scheduled_reminders",
        ["scheduled_date"],
    )
    op.create_index("ix_scheduled_reminders_status", "scheduled_reminders", ["status"])


def downgrade() -> None:
    op.drop_index("ix_scheduled_reminders_status", table_name="scheduled_reminders")
    op.drop_index(
        "ix_scheduled_reminders_scheduled_date", table_name="scheduled_reminders"
    )
    op.drop_index(
        "ix_scheduled_reminders_booking_ref", table_name="scheduled_reminders"
    )
    op.drop_table("scheduled_reminders")
    op.drop_index("ix_notifications_external_message_id", table_name="notifications")
    op.drop_index("ix_notifications_scheduled_at", table_name="notifications")
    op.drop_index("ix_notifications_status", table_name="notifications")
    op.drop_index("ix_notifications_recipient_id", table_name="notifications")
    op.drop_table("notifications")
