# SQLAlchemy ORM models for the booking and automated-messaging tables.
# Every table is scoped to one organization; queries in the messaging core always filter on it.
from datetime import time
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_mixin, relationship

from .db import Base


def _uuid() -> str:
    return str(uuid4())


@declarative_mixin
class TimestampMixin:
    """Database-managed created_at/updated_at columns (UTC)."""
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Organization(Base, TimestampMixin):
    """Tenant. Provisioned outside this service."""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)


class Property(Base, TimestampMixin):
    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    # Default arrival/departure times shown in guest messages
    check_in_time = Column(Time, nullable=False, default=time(15, 0))
    check_out_time = Column(Time, nullable=False, default=time(11, 0))


class Booking(Base, TimestampMixin):
    """Guest stay at a property.

    Status values: pending, confirmed, checked_in, checked_out, completed, cancelled, no_show.
    Any status may follow any other; each persisted change fires the event triggers mapped to
    the new status (see app.triggers.STATUS_TO_EVENT).
    """
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)
    guest_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    guest_email = Column(String(255), nullable=True)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    guests = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")
    source = Column(String(20), nullable=False, default="Direct")
    notes = Column(Text, nullable=True)

    property = relationship("Property", lazy="joined")

    # check_in drives the sweeper's scan window; (property, dates) drives overlap checks
    __table_args__ = (
        CheckConstraint("check_out > check_in", name="ck_bookings_checkout_after_checkin"),
        Index("ix_bookings_org_check_in", "organization_id", "check_in"),
        Index("ix_bookings_property_dates", "property_id", "check_in", "check_out"),
        Index("ix_bookings_status", "status"),
    )


class MessageTemplate(Base, TimestampMixin):
    """User-authored message body with {{variable}} / {variable} placeholders."""
    __tablename__ = "message_templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    recipient = Column(String(20), nullable=False, default="guest")  # guest | cleaner | team
    template = Column(Text, nullable=False)


class MessageTrigger(Base, TimestampMixin):
    """Rule that sends a template automatically.

    trigger_type == "event": fires when a booking enters the status mapped to event_type.
    trigger_type == "time_based": fires at check-in/check-out +/- an offset, at send_time,
    discovered by the hourly sweep.
    """
    __tablename__ = "message_triggers"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    template_id = Column(String(36), ForeignKey("message_templates.id"), nullable=False, index=True)
    trigger_type = Column(String(20), nullable=False)

    event_type = Column(String(40), nullable=True)

    time_offset_value = Column(Integer, nullable=True)
    time_offset_unit = Column(String(10), nullable=True)  # hours | days
    time_reference = Column(String(20), nullable=True)  # before_checkin | after_checkin | before_checkout | after_checkout
    send_time = Column(Time, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # Empty list means the trigger applies to every property in the organization
    property_assignments = relationship(
        "TriggerPropertyAssignment",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_message_triggers_lookup", "organization_id", "trigger_type", "is_active"),
    )

    @property
    def property_ids(self) -> list:
        return [a.property_id for a in self.property_assignments]


class TriggerPropertyAssignment(Base):
    __tablename__ = "trigger_property_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trigger_id = Column(String(36), ForeignKey("message_triggers.id", ondelete="CASCADE"), nullable=False, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("trigger_id", "property_id", name="uq_trigger_property"),
    )


class SentMessage(Base, TimestampMixin):
    """Durable record of one delivery attempt.

    Inserted as 'pending' before the transport call and moved to 'sent' or 'failed' afterwards.
    Rows are never deleted. trigger_id is NULL for manual sends.
    """
    __tablename__ = "sent_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    trigger_id = Column(String(36), ForeignKey("message_triggers.id"), nullable=True, index=True)
    template_id = Column(String(36), ForeignKey("message_templates.id"), nullable=True)

    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default="pending")  # pending | sent | failed | bounced
    provider = Column(String(50), nullable=False, default="resend")
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sent_messages_org_created_at", "organization_id", "created_at"),
        Index("ix_sent_messages_status", "status"),
    )


class MessageIdempotency(Base):
    """Ledger row proving a (booking, trigger) message was accepted by the transport.

    idempotency_key is UNIQUE: concurrent dispatchers racing on the same pair produce one row.
    """
    __tablename__ = "message_idempotency"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    trigger_id = Column(String(36), ForeignKey("message_triggers.id"), nullable=False, index=True)
    idempotency_key = Column(String(80), nullable=False, unique=True)
    sent_message_id = Column(String(36), ForeignKey("sent_messages.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
