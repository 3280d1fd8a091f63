# Message dispatcher: one render-and-send attempt for a (booking, trigger, template).
#
# Side effects are staged so every crash point leaves a safe state:
#   1. ledger check          -> already sent: return the recorded message, nothing written
#   2-5. load + render       -> nothing written
#   6. SentMessage 'pending' -> durable intent, retryable
#   7. transport call
#   8. 'sent' + ledger row   -> terminal
#   9. 'failed' + error      -> retryable, no ledger row
# The public functions never raise; they return a DispatchResult.
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import email_transport, ledger, models, schemas, templating
from .db import SessionLocal
from .errors import (
    BookingNotFound,
    MessagingError,
    MissingRecipient,
    PersistenceFailure,
    TemplateNotFound,
    TransportFailure,
)

logger = logging.getLogger("stayflow.dispatcher")

# send_email(to, subject, html) -> provider message id; raises on failure
Transport = Callable[..., str]


def _resolve_transport(transport: Optional[Transport]) -> Transport:
    # Looked up at call time so tests can monkeypatch app.email_transport.send_email
    return transport or email_transport.send_email


def _failure(exc: MessagingError, sent_message_id: Optional[str] = None) -> schemas.DispatchResult:
    return schemas.DispatchResult(
        success=False,
        sent_message_id=sent_message_id,
        error=exc.message,
        error_code=exc.code,
    )


def _load_booking(db: Session, organization_id: str, booking_id: str) -> models.Booking:
    booking = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id, models.Booking.organization_id == organization_id)
        .first()
    )
    if booking is None:
        raise BookingNotFound()
    return booking


def _load_template(db: Session, organization_id: str, template_id: str) -> models.MessageTemplate:
    template = (
        db.query(models.MessageTemplate)
        .filter(
            models.MessageTemplate.id == template_id,
            models.MessageTemplate.organization_id == organization_id,
        )
        .first()
    )
    if template is None:
        raise TemplateNotFound()
    return template


def _create_pending(
    db: Session,
    booking: models.Booking,
    trigger_id: Optional[str],
    template: models.MessageTemplate,
    subject: str,
    body: str,
) -> models.SentMessage:
    msg = models.SentMessage(
        organization_id=booking.organization_id,
        booking_id=booking.id,
        trigger_id=trigger_id,
        template_id=template.id,
        recipient_email=booking.guest_email,
        recipient_name=booking.guest_name,
        subject=subject,
        body=body,
        status="pending",
        provider=email_transport.PROVIDER,
        retry_count=0,
    )
    try:
        db.add(msg)
        db.commit()
        db.refresh(msg)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("dispatch.pending_insert_failed", extra={"booking_id": booking.id})
        raise PersistenceFailure() from exc
    return msg


def _deliver(db: Session, msg: models.SentMessage, transport: Transport) -> schemas.DispatchResult:
    """Steps 7-9 against an existing SentMessage row."""
    try:
        provider_id = transport(
            msg.recipient_email,
            msg.subject,
            templating.template_to_html(msg.body),
        )
    except Exception as exc:
        error = exc if isinstance(exc, TransportFailure) else TransportFailure(str(exc) or None)
        msg.status = "failed"
        msg.error_message = error.message
        msg.retry_count = (msg.retry_count or 0) + 1
        db.add(msg)
        db.commit()
        logger.warning(
            "dispatch.failed",
            extra={
                "sent_message_id": msg.id,
                "booking_id": msg.booking_id,
                "trigger_id": msg.trigger_id,
                "retry_count": msg.retry_count,
                "error": error.message,
            },
        )
        return _failure(error, sent_message_id=msg.id)

    msg.status = "sent"
    msg.provider_message_id = provider_id
    msg.sent_at = datetime.now(timezone.utc)
    msg.error_message = None
    db.add(msg)
    db.commit()

    if msg.trigger_id is not None:
        recorded = ledger.record_sent(db, msg.organization_id, msg.booking_id, msg.trigger_id, msg.id)
        if not recorded:
            # Another dispatcher recorded this pair first; the guest got the message either way
            logger.warning(
                "dispatch.lost_ledger_race",
                extra={"sent_message_id": msg.id, "booking_id": msg.booking_id, "trigger_id": msg.trigger_id},
            )

    logger.info(
        "dispatch.sent",
        extra={
            "sent_message_id": msg.id,
            "booking_id": msg.booking_id,
            "trigger_id": msg.trigger_id,
            "provider_message_id": provider_id,
        },
    )
    return schemas.DispatchResult(success=True, sent_message_id=msg.id)


def _dispatch(
    db: Session,
    organization_id: str,
    booking_id: str,
    trigger_id: Optional[str],
    template_id: str,
    transport: Transport,
) -> schemas.DispatchResult:
    if trigger_id is not None:
        existing = ledger.get_record(db, booking_id, trigger_id)
        if existing is not None:
            logger.info(
                "dispatch.already_sent",
                extra={"booking_id": booking_id, "trigger_id": trigger_id},
            )
            return schemas.DispatchResult(success=True, sent_message_id=existing.sent_message_id)

    booking = _load_booking(db, organization_id, booking_id)
    if not booking.guest_email:
        raise MissingRecipient()
    template = _load_template(db, organization_id, template_id)

    variables = templating.extract_variables(booking, booking.property)
    body = templating.render(template.template, variables)
    subject = templating.generate_subject(template.title, variables["property_name"])

    msg = _create_pending(db, booking, trigger_id, template, subject, body)
    return _deliver(db, msg, transport)


def dispatch(
    organization_id: str,
    booking_id: str,
    trigger_id: Optional[str],
    template_id: str,
    db: Optional[Session] = None,
    transport: Optional[Transport] = None,
) -> schemas.DispatchResult:
    """
    Render and send `template_id` to the guest of `booking_id`.

    `trigger_id=None` is a manual send: no ledger check and no ledger row.
    Accepts an optional Session; otherwise opens and closes its own.
    """
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True

    try:
        return _dispatch(db, organization_id, booking_id, trigger_id, template_id, _resolve_transport(transport))
    except MessagingError as exc:
        db.rollback()
        logger.info(
            "dispatch.rejected",
            extra={"booking_id": booking_id, "trigger_id": trigger_id, "code": exc.code},
        )
        return _failure(exc)
    except Exception as exc:
        db.rollback()
        logger.exception("dispatch.error", extra={"booking_id": booking_id, "trigger_id": trigger_id})
        return schemas.DispatchResult(success=False, error=str(exc) or "Unknown error", error_code="internal_error")
    finally:
        if created_session:
            db.close()


def retry_sent_message(
    sent_message_id: str,
    organization_id: Optional[str] = None,
    db: Optional[Session] = None,
    transport: Optional[Transport] = None,
) -> schemas.DispatchResult:
    """
    Re-send a 'pending' or 'failed' SentMessage using its stored subject and body.

    Already 'sent' is a successful no-op. When the ledger shows the same (booking, trigger)
    was delivered by another attempt, nothing is sent and that message is returned.
    """
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True

    try:
        q = db.query(models.SentMessage).filter(models.SentMessage.id == sent_message_id)
        if organization_id is not None:
            q = q.filter(models.SentMessage.organization_id == organization_id)
        msg = q.first()
        if msg is None:
            return schemas.DispatchResult(success=False, error="Message not found", error_code="message_not_found")

        if msg.status == "sent":
            return schemas.DispatchResult(success=True, sent_message_id=msg.id)

        if msg.trigger_id is not None:
            existing = ledger.get_record(db, msg.booking_id, msg.trigger_id)
            if existing is not None:
                logger.info(
                    "dispatch.retry_superseded",
                    extra={"sent_message_id": msg.id, "delivered_as": existing.sent_message_id},
                )
                return schemas.DispatchResult(success=True, sent_message_id=existing.sent_message_id)

        return _deliver(db, msg, _resolve_transport(transport))
    except Exception as exc:
        db.rollback()
        logger.exception("dispatch.retry_error", extra={"sent_message_id": sent_message_id})
        return schemas.DispatchResult(success=False, error=str(exc) or "Unknown error", error_code="internal_error")
    finally:
        if created_session:
            db.close()
