# Automated messaging endpoints: delivery history, stats, retries, manual sends and trigger previews.
# All queries are scoped to the organization from the X-Organization-Id header.
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..dispatcher import dispatch, retry_sent_message
from ..sweepers import preview_fire_time
from ..triggers import should_trigger_fire
from .auth import get_organization_id

router = APIRouter()
logger = logging.getLogger("stayflow.messages")


@router.get("/messages/sent", response_model=List[schemas.SentMessageRead])
def list_sent_messages(
    status_filter: Optional[schemas.MessageStatus] = Query(None, alias="status"),
    booking_id: Optional[str] = Query(None),
    property_id: Optional[str] = Query(None),
    recipient_email: Optional[str] = Query(None, min_length=1),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> List[models.SentMessage]:
    """
    Message history, newest first.

    Filters combine with AND; recipient_email is a case-insensitive substring match.
    """
    q = db.query(models.SentMessage).filter(models.SentMessage.organization_id == organization_id)
    if status_filter is not None:
        q = q.filter(models.SentMessage.status == status_filter)
    if booking_id is not None:
        q = q.filter(models.SentMessage.booking_id == booking_id)
    if property_id is not None:
        q = q.join(models.Booking, models.Booking.id == models.SentMessage.booking_id).filter(
            models.Booking.property_id == property_id
        )
    if recipient_email is not None:
        q = q.filter(models.SentMessage.recipient_email.ilike(f"%{recipient_email}%"))
    if date_from is not None:
        q = q.filter(models.SentMessage.created_at >= date_from)
    if date_to is not None:
        q = q.filter(models.SentMessage.created_at <= date_to)

    return q.order_by(models.SentMessage.created_at.desc(), models.SentMessage.id.desc()).limit(limit).all()


@router.get("/messages/stats", response_model=schemas.MessageStats)
def message_stats(
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> schemas.MessageStats:
    rows = (
        db.query(models.SentMessage.status, func.count(models.SentMessage.id))
        .filter(models.SentMessage.organization_id == organization_id)
        .group_by(models.SentMessage.status)
        .all()
    )
    counts = {s: n for s, n in rows}
    return schemas.MessageStats(
        total=sum(counts.values()),
        sent=counts.get("sent", 0),
        failed=counts.get("failed", 0),
        pending=counts.get("pending", 0),
    )


@router.post("/messages/sent/{sent_message_id}/retry", response_model=schemas.DispatchResult)
def retry_message(
    sent_message_id: str,
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> schemas.DispatchResult:
    """Re-send a failed or pending message. Already-sent messages return success without sending."""
    result = retry_sent_message(sent_message_id, organization_id=organization_id, db=db)
    if not result.success and result.error_code == "message_not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    logger.info(
        "messages.retry",
        extra={"sent_message_id": sent_message_id, "success": result.success},
    )
    return result


@router.post("/messages/send", response_model=schemas.DispatchResult)
def send_manual_message(
    payload: schemas.ManualSendRequest,
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> schemas.DispatchResult:
    """
    Send a template to a booking's guest right now.

    Not tied to a trigger, so it is never deduplicated. Failures come back with the raw
    validation or provider error so the operator can see what went wrong.
    """
    result = dispatch(organization_id, payload.booking_id, None, payload.template_id, db=db)
    logger.info(
        "messages.manual_send",
        extra={"booking_id": payload.booking_id, "template_id": payload.template_id, "success": result.success},
    )
    return result


@router.get("/triggers/{trigger_id}/preview", response_model=schemas.TriggerPreview)
def preview_trigger(
    trigger_id: str,
    booking_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> schemas.TriggerPreview:
    """When a time-based trigger fires for a booking, and whether it applies to it at all."""
    trigger = (
        db.query(models.MessageTrigger)
        .filter(models.MessageTrigger.id == trigger_id, models.MessageTrigger.organization_id == organization_id)
        .first()
    )
    if not trigger:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trigger not found")
    if trigger.trigger_type != "time_based":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only time-based triggers have a fire time")

    booking = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id, models.Booking.organization_id == organization_id)
        .first()
    )
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    try:
        fire_at = preview_fire_time(trigger, booking)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return schemas.TriggerPreview(
        trigger_id=trigger.id,
        booking_id=booking.id,
        fire_at=fire_at,
        applies=should_trigger_fire(db, organization_id, trigger.id, booking.id),
    )
