"""Messaging schema: organizations, properties, bookings, templates, triggers, sent messages, idempotency ledger

Revision ID: 20260105_090000
Revises:
Create Date: 2026-01-05 09:00:00

Notes:
- message_idempotency.idempotency_key is UNIQUE; it is what keeps a (booking, trigger)
  message from being accepted twice.
- (organization_id, check_in) backs the hourly sweep's booking window scan.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20260105_090000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "properties",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=500), nullable=True),
        sa.Column("check_in_time", sa.Time(), nullable=False),
        sa.Column("check_out_time", sa.Time(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_properties_organization_id", "properties", ["organization_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("property_id", sa.String(length=36), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("guest_name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=False),
        sa.Column("guest_email", sa.String(length=255), nullable=True),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("guests", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("check_out > check_in", name="ck_bookings_checkout_after_checkin"),
    )
    op.create_index("ix_bookings_organization_id", "bookings", ["organization_id"])
    op.create_index("ix_bookings_property_id", "bookings", ["property_id"])
    op.create_index("ix_bookings_org_check_in", "bookings", ["organization_id", "check_in"])
    op.create_index("ix_bookings_property_dates", "bookings", ["property_id", "check_in", "check_out"])
    op.create_index("ix_bookings_status", "bookings", ["status"])

    op.create_table(
        "message_templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("recipient", sa.String(length=20), nullable=False),
        sa.Column("template", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_message_templates_organization_id", "message_templates", ["organization_id"])

    op.create_table(
        "message_triggers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("template_id", sa.String(length=36), sa.ForeignKey("message_templates.id"), nullable=False),
        sa.Column("trigger_type", sa.String(length=20), nullable=False),
        sa.Column("event_type", sa.String(length=40), nullable=True),
        sa.Column("time_offset_value", sa.Integer(), nullable=True),
        sa.Column("time_offset_unit", sa.String(length=10), nullable=True),
        sa.Column("time_reference", sa.String(length=20), nullable=True),
        sa.Column("send_time", sa.Time(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_message_triggers_organization_id", "message_triggers", ["organization_id"])
    op.create_index("ix_message_triggers_template_id", "message_triggers", ["template_id"])
    op.create_index("ix_message_triggers_lookup", "message_triggers", ["organization_id", "trigger_type", "is_active"])

    op.create_table(
        "trigger_property_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "trigger_id",
            sa.String(length=36),
            sa.ForeignKey("message_triggers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("property_id", sa.String(length=36), sa.ForeignKey("properties.id"), nullable=False),
        sa.UniqueConstraint("trigger_id", "property_id", name="uq_trigger_property"),
    )
    op.create_index("ix_trigger_property_assignments_trigger_id", "trigger_property_assignments", ["trigger_id"])
    op.create_index("ix_trigger_property_assignments_property_id", "trigger_property_assignments", ["property_id"])

    op.create_table(
        "sent_messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("trigger_id", sa.String(length=36), sa.ForeignKey("message_triggers.id"), nullable=True),
        sa.Column("template_id", sa.String(length=36), sa.ForeignKey("message_templates.id"), nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("recipient_name", sa.String(length=255), nullable=True),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sent_messages_organization_id", "sent_messages", ["organization_id"])
    op.create_index("ix_sent_messages_booking_id", "sent_messages", ["booking_id"])
    op.create_index("ix_sent_messages_trigger_id", "sent_messages", ["trigger_id"])
    op.create_index("ix_sent_messages_org_created_at", "sent_messages", ["organization_id", "created_at"])
    op.create_index("ix_sent_messages_status", "sent_messages", ["status"])

    op.create_table(
        "message_idempotency",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(length=36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("trigger_id", sa.String(length=36), sa.ForeignKey("message_triggers.id"), nullable=False),
        sa.Column("idempotency_key", sa.String(length=80), nullable=False),
        sa.Column("sent_message_id", sa.String(length=36), sa.ForeignKey("sent_messages.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_message_idempotency_key"),
    )
    op.create_index("ix_message_idempotency_organization_id", "message_idempotency", ["organization_id"])
    op.create_index("ix_message_idempotency_booking_id", "message_idempotency", ["booking_id"])
    op.create_index("ix_message_idempotency_trigger_id", "message_idempotency", ["trigger_id"])


def downgrade() -> None:
    # Reverse dependency order
    for table in (
        "message_idempotency",
        "sent_messages",
        "trigger_property_assignments",
        "message_triggers",
        "message_templates",
        "bookings",
        "properties",
        "organizations",
    ):
        op.drop_table(table)
