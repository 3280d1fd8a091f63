# Booking write path: create and status updates.
# Every committed status change is handed to the status-change hook exactly once.
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..errors import ConflictError
from ..locks import property_lock_key, try_lock
from ..triggers import notify_status_change
from .auth import get_organization_id

router = APIRouter()
logger = logging.getLogger("stayflow.bookings")


def _check_overlap(
    db: Session,
    property_id: str,
    check_in: date,
    check_out: date,
    exclude_booking_id: Optional[str] = None,
) -> None:
    """
    Raise ConflictError if a non-cancelled booking at the property overlaps [check_in, check_out).

    Two stays overlap when new_start < existing_end and new_end > existing_start.
    """
    q = db.query(models.Booking.id).filter(
        models.Booking.property_id == property_id,
        models.Booking.status != "cancelled",
        models.Booking.check_in < check_out,
        models.Booking.check_out > check_in,
    )
    if exclude_booking_id is not None:
        q = q.filter(models.Booking.id != exclude_booking_id)
    if q.first() is not None:
        raise ConflictError()


def _get_booking(db: Session, organization_id: str, booking_id: str) -> models.Booking:
    obj = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id, models.Booking.organization_id == organization_id)
        .first()
    )
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return obj


@router.post("/bookings", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> models.Booking:
    prop = (
        db.query(models.Property)
        .filter(models.Property.id == payload.property_id, models.Property.organization_id == organization_id)
        .first()
    )
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")

    # Coarse per-property lock narrows the check-then-insert race across processes
    with try_lock(property_lock_key(prop.id), ttl_ms=5000) as locked:
        if not locked:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": "busy", "retry_after": 1},
            )
        try:
            _check_overlap(db, prop.id, payload.check_in, payload.check_out)

            obj = models.Booking(
                organization_id=organization_id,
                property_id=prop.id,
                guest_name=payload.guest_name,
                phone=payload.phone,
                guest_email=payload.guest_email,
                check_in=payload.check_in,
                check_out=payload.check_out,
                guests=payload.guests,
                price=payload.price,
                source=payload.source,
                notes=payload.notes or None,
                status="pending",
            )
            db.add(obj)
            db.commit()
            db.refresh(obj)
        except ConflictError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
        except Exception as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create booking: {exc}")

    logger.info("bookings.created", extra={"booking_id": obj.id, "organization_id": organization_id})
    notify_status_change(organization_id, obj.id, None, obj.status)
    return obj


@router.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> models.Booking:
    return _get_booking(db, organization_id, booking_id)


@router.patch("/bookings/{booking_id}/status", response_model=schemas.BookingRead)
def update_booking_status(
    booking_id: str,
    payload: schemas.BookingStatusUpdate,
    db: Session = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
) -> models.Booking:
    """
    Set a booking's status.

    No transition whitelist: any status may follow any other. Event triggers fire only when
    the status actually changes.
    """
    obj = _get_booking(db, organization_id, booking_id)
    old_status = obj.status

    if old_status != payload.status:
        try:
            obj.status = payload.status
            db.add(obj)
            db.commit()
            db.refresh(obj)
        except Exception as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to update booking status: {exc}")

        logger.info(
            "bookings.status_changed",
            extra={"booking_id": obj.id, "from": old_status, "to": obj.status},
        )
        notify_status_change(organization_id, obj.id, old_status, obj.status)

    return obj
