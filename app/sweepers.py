# Scheduled (time-based) trigger sweep, run hourly by the cron endpoint or the optional
# in-process interval thread.
from __future__ import annotations

import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from .db import SessionLocal
from . import ledger, models, schemas
from .dispatcher import Transport, dispatch
from .locks import SWEEP_LOCK_KEY, try_lock

logger = logging.getLogger("stayflow.sweeper")

# Bookings are only scanned when check_in falls inside [now - LOOKBACK, now + LOOKAHEAD].
# Anything a trigger would fire for outside that window is never discovered.
SWEEP_LOOKBACK_DAYS = int(os.getenv("SWEEP_LOOKBACK_DAYS", "7"))
SWEEP_LOOKAHEAD_DAYS = int(os.getenv("SWEEP_LOOKAHEAD_DAYS", "30"))

# A pair is due when its fire time lies in [now - FIRE_WINDOW, now]; matches the hourly cadence.
# Running the sweep more or less often than FIRE_WINDOW skips or double-evaluates fire times.
FIRE_WINDOW = timedelta(hours=1)

# Wall-clock zone in which send_time and check-in/check-out dates are interpreted
MESSAGE_TIMEZONE = ZoneInfo(os.getenv("MESSAGE_TIMEZONE", "UTC"))

# Cross-process sweep guard; shorter than the cadence so a crashed sweeper can't block the next run
SWEEP_LOCK_TTL_MS = 55 * 60 * 1000


def compute_fire_time(
    check_in: date,
    check_out: date,
    offset_value: int,
    offset_unit: str,
    reference: str,
    send_time: time,
    tz: ZoneInfo = MESSAGE_TIMEZONE,
) -> datetime:
    """
    When a time-based trigger fires for a booking.

    base   = check_in for *_checkin references, check_out for *_checkout (midnight, `tz`)
    offset = offset_value hours or days, subtracted for before_*, added for after_*
    The result's time of day is then replaced with `send_time`.
    """
    if reference in ("before_checkin", "after_checkin"):
        base_day = check_in
    elif reference in ("before_checkout", "after_checkout"):
        base_day = check_out
    else:
        raise ValueError(f"Unknown time reference: {reference}")

    if offset_unit == "hours":
        offset = timedelta(hours=offset_value)
    elif offset_unit == "days":
        offset = timedelta(days=offset_value)
    else:
        raise ValueError(f"Unknown time offset unit: {offset_unit}")

    base = datetime.combine(base_day, time.min, tzinfo=tz)
    target = base - offset if reference.startswith("before") else base + offset
    return target.replace(
        hour=send_time.hour,
        minute=send_time.minute,
        second=send_time.second,
        microsecond=0,
    )


def is_due(fire_at: datetime, now: datetime) -> bool:
    return now - FIRE_WINDOW <= fire_at <= now


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    # Treat naive datetimes as UTC
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def preview_fire_time(trigger: models.MessageTrigger, booking: models.Booking) -> datetime:
    """Fire instant of a time-based trigger for a booking, in MESSAGE_TIMEZONE."""
    return compute_fire_time(
        booking.check_in,
        booking.check_out,
        trigger.time_offset_value or 0,
        trigger.time_offset_unit,
        trigger.time_reference,
        trigger.send_time or time(0, 0),
    )


def _candidate_bookings(db: Session, organization_id: str, property_ids: list, now: datetime) -> list:
    today = now.astimezone(MESSAGE_TIMEZONE).date()
    window_start = today - timedelta(days=SWEEP_LOOKBACK_DAYS)
    window_end = today + timedelta(days=SWEEP_LOOKAHEAD_DAYS)

    q = (
        db.query(models.Booking.id, models.Booking.check_in, models.Booking.check_out)
        .filter(
            models.Booking.organization_id == organization_id,
            models.Booking.guest_email.isnot(None),
            models.Booking.guest_email != "",
            models.Booking.check_in >= window_start,
            models.Booking.check_in <= window_end,
        )
    )
    if property_ids:
        q = q.filter(models.Booking.property_id.in_(property_ids))
    return q.order_by(models.Booking.check_in.asc(), models.Booking.id.asc()).all()


def _sweep(db: Session, now: datetime, transport: Optional[Transport]) -> schemas.SweepStats:
    stats = schemas.SweepStats()

    triggers = (
        db.query(models.MessageTrigger)
        .filter(
            models.MessageTrigger.trigger_type == "time_based",
            models.MessageTrigger.is_active.is_(True),
        )
        .order_by(models.MessageTrigger.created_at.asc(), models.MessageTrigger.id.asc())
        .all()
    )
    # Plain snapshots: dispatch commits on this session and would expire ORM instances
    plans = [
        {
            "id": t.id,
            "organization_id": t.organization_id,
            "template_id": t.template_id,
            "value": t.time_offset_value,
            "unit": t.time_offset_unit,
            "reference": t.time_reference,
            "send_time": t.send_time,
            "property_ids": t.property_ids,
        }
        for t in triggers
    ]
    if not plans:
        logger.info("sweep.no_triggers", extra={"now": now.isoformat()})
        return stats

    for plan in plans:
        trigger_id = plan["id"]
        try:
            bookings = _candidate_bookings(db, plan["organization_id"], plan["property_ids"], now)
        except Exception:
            db.rollback()
            logger.exception("sweep.trigger_failed", extra={"trigger_id": trigger_id})
            continue

        for booking_id, check_in, check_out in bookings:
            stats.processed += 1
            try:
                fire_at = compute_fire_time(
                    check_in,
                    check_out,
                    plan["value"],
                    plan["unit"],
                    plan["reference"],
                    plan["send_time"],
                )
                if not is_due(fire_at, now):
                    stats.skipped += 1
                    continue

                # Already-delivered pairs stay due until the booking leaves the scan window
                if ledger.has_sent(db, booking_id, trigger_id):
                    stats.skipped += 1
                    continue

                result = dispatch(
                    plan["organization_id"],
                    booking_id,
                    trigger_id,
                    plan["template_id"],
                    db=db,
                    transport=transport,
                )
                if result.success:
                    stats.sent += 1
                else:
                    stats.failed += 1
                    logger.warning(
                        "sweep.dispatch_failed",
                        extra={"trigger_id": trigger_id, "booking_id": booking_id, "error": result.error},
                    )
            except Exception:
                db.rollback()
                stats.failed += 1
                logger.exception("sweep.booking_failed", extra={"trigger_id": trigger_id, "booking_id": booking_id})

    return stats


def sweep_scheduled_messages(
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
    transport: Optional[Transport] = None,
) -> schemas.SweepStats:
    """
    Send every time-based trigger message whose fire time falls in the trailing hour.

    Semantics:
    - Safe to run repeatedly or concurrently: the ledger lets each (booking, trigger) through once.
    - A bad trigger or booking is logged and skipped; the sweep always runs to completion.
    - Accepts an optional Session; otherwise creates and cleans up its own.

    Returns processed/sent/failed/skipped counts.
    """
    now = _as_utc(now)

    with try_lock(SWEEP_LOCK_KEY, ttl_ms=SWEEP_LOCK_TTL_MS) as locked:
        if not locked:
            logger.info("sweep.already_running", extra={"now": now.isoformat()})
            return schemas.SweepStats()

        created_session = False
        if db is None:
            db = SessionLocal()
            created_session = True

        try:
            logger.info("sweep.start", extra={"now": now.isoformat()})
            stats = _sweep(db, now, transport)
            logger.info("sweep.complete", extra={"now": now.isoformat(), **stats.model_dump()})
            return stats
        finally:
            if created_session:
                db.close()
