# Pydantic models (request/response DTOs and core result values).
# Keep models minimal and serializable; business logic lives in the dispatcher, triggers and sweepers.
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator, EmailStr
from typing import Literal, Optional
from datetime import date, datetime
from decimal import Decimal


BookingStatus = Literal[
    "pending",
    "confirmed",
    "checked_in",
    "checked_out",
    "completed",
    "cancelled",
    "no_show",
]

BookingSource = Literal["TikTok", "WhatsApp", "Instagram", "Direct", "Other"]

EventType = Literal[
    "booking_created",
    "booking_confirmed",
    "booking_checked_in",
    "booking_checked_out",
    "booking_completed",
    "booking_cancelled",
    "booking_no_show",
]

TriggerType = Literal["event", "time_based"]
TimeOffsetUnit = Literal["hours", "days"]
TimeReference = Literal["before_checkin", "after_checkin", "before_checkout", "after_checkout"]
MessageStatus = Literal["pending", "sent", "failed", "bounced"]


# Bookings
class BookingBase(BaseModel):
    property_id: str = Field(..., min_length=1)
    guest_name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=1, max_length=50)
    guest_email: Optional[EmailStr] = None
    check_in: date
    check_out: date
    guests: int = Field(1, ge=1)
    price: Decimal = Field(..., ge=0)
    source: BookingSource = "Direct"
    notes: Optional[str] = None

    @field_validator("guest_name", "phone", mode="before")
    @classmethod
    def strip_text(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip()
        return v

    # Blank email in a form submission means "no email", not an invalid address
    @field_validator("guest_email", mode="before")
    @classmethod
    def blank_email_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v


class BookingCreate(BookingBase):
    @model_validator(mode="after")
    def check_dates(self) -> "BookingCreate":
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class BookingRead(BookingBase):
    id: str
    organization_id: str
    status: BookingStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


# Messaging
class DispatchResult(BaseModel):
    """Outcome of one dispatch or retry; never an exception."""
    success: bool
    sent_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class SweepStats(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class CronResponse(BaseModel):
    success: bool
    timestamp: datetime
    stats: SweepStats


class SentMessageRead(BaseModel):
    id: str
    organization_id: str
    booking_id: str
    trigger_id: Optional[str] = None
    template_id: Optional[str] = None
    recipient_email: str
    recipient_name: Optional[str] = None
    subject: str
    body: str
    status: MessageStatus
    provider: str
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    sent_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageStats(BaseModel):
    total: int
    sent: int
    failed: int
    pending: int


class ManualSendRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    template_id: str = Field(..., min_length=1)


class TriggerPreview(BaseModel):
    trigger_id: str
    booking_id: str
    fire_at: datetime
    applies: bool
