# Error taxonomy for the messaging core.
# The dispatcher turns these into failed DispatchResult values; routes map them to HTTP statuses.
from __future__ import annotations


class MessagingError(Exception):
    """Base class; `code` is a stable machine-readable identifier surfaced in API responses."""

    code = "messaging_error"
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    @property
    def message(self) -> str:
        return str(self)


class BookingNotFound(MessagingError):
    code = "booking_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "Booking not found"


class MissingRecipient(MessagingError):
    """The booking has no guest email; nothing can ever be delivered for it."""

    code = "missing_recipient"

    @classmethod
    def default_message(cls) -> str:
        return "Guest email not provided"


class TemplateNotFound(MessagingError):
    code = "template_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "Template not found"


class ConflictError(MessagingError):
    """Booking dates overlap an existing non-cancelled booking at the same property."""

    code = "booking_conflict"

    @classmethod
    def default_message(cls) -> str:
        return "Property is already booked for the selected dates"


class TransportFailure(MessagingError):
    """Any non-success outcome of the email provider call."""

    code = "transport_failure"
    retryable = True

    @classmethod
    def default_message(cls) -> str:
        return "Failed to send email"


class PersistenceFailure(MessagingError):
    code = "persistence_failure"
    retryable = True

    @classmethod
    def default_message(cls) -> str:
        return "Failed to create message record"
