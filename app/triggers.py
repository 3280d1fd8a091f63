# Event-based triggers: booking status transitions -> matching active triggers -> dispatch.
# The status hook hands work to a background executor so the caller never waits on or fails
# because of message delivery.
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .db import SessionLocal
from .dispatcher import Transport, dispatch

logger = logging.getLogger("stayflow.triggers")

# Every booking status maps to exactly one trigger event
STATUS_TO_EVENT = {
    "pending": "booking_created",
    "confirmed": "booking_confirmed",
    "checked_in": "booking_checked_in",
    "checked_out": "booking_checked_out",
    "completed": "booking_completed",
    "cancelled": "booking_cancelled",
    "no_show": "booking_no_show",
}
EVENT_TO_STATUS = {event: status for status, event in STATUS_TO_EVENT.items()}

# Upper bound on concurrent dispatches for one status change
EVENT_DISPATCH_MAX_WORKERS = int(os.getenv("EVENT_DISPATCH_MAX_WORKERS", "4"))

# Status-hook handoff: one worker keeps hook tasks ordered per process
_hook_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="status-hook")
_pending: set = set()
_pending_lock = threading.Lock()


def applies_to_property(trigger: models.MessageTrigger, property_id: str) -> bool:
    """No property assignments means the trigger covers the whole organization."""
    ids = trigger.property_ids
    return not ids or property_id in ids


def _active_event_triggers(db: Session, organization_id: str, event_type: str) -> List[models.MessageTrigger]:
    return (
        db.query(models.MessageTrigger)
        .filter(
            models.MessageTrigger.organization_id == organization_id,
            models.MessageTrigger.trigger_type == "event",
            models.MessageTrigger.event_type == event_type,
            models.MessageTrigger.is_active.is_(True),
        )
        .order_by(models.MessageTrigger.created_at.asc(), models.MessageTrigger.id.asc())
        .all()
    )


def _dispatch_one(
    organization_id: str,
    booking_id: str,
    trigger_id: str,
    template_id: str,
    transport: Optional[Transport],
) -> schemas.DispatchResult:
    # Own session per worker thread; nothing mutable is shared between dispatches
    try:
        return dispatch(organization_id, booking_id, trigger_id, template_id, transport=transport)
    except Exception as exc:
        logger.exception("triggers.dispatch_error", extra={"booking_id": booking_id, "trigger_id": trigger_id})
        return schemas.DispatchResult(success=False, error=str(exc) or "Unknown error", error_code="internal_error")


def on_status_change(
    organization_id: str,
    booking_id: str,
    new_status: str,
    transport: Optional[Transport] = None,
) -> List[schemas.DispatchResult]:
    """
    Fire every active event trigger matching `new_status` for one booking.

    Returns one DispatchResult per applicable trigger (empty when nothing applies or the
    booking cannot receive email). Never raises.
    """
    event_type = STATUS_TO_EVENT.get(new_status)
    if event_type is None:
        logger.error("triggers.unknown_status", extra={"booking_id": booking_id, "status": new_status})
        return []

    db = SessionLocal()
    try:
        booking = (
            db.query(models.Booking)
            .filter(models.Booking.id == booking_id, models.Booking.organization_id == organization_id)
            .first()
        )
        if booking is None:
            logger.error("triggers.booking_not_found", extra={"booking_id": booking_id})
            return []
        if not booking.guest_email:
            logger.info("triggers.no_guest_email", extra={"booking_id": booking_id, "event": event_type})
            return []

        triggers = _active_event_triggers(db, organization_id, event_type)
        # (trigger_id, template_id) snapshot so worker threads never touch this session's objects
        work = [(t.id, t.template_id) for t in triggers if applies_to_property(t, booking.property_id)]
    except Exception:
        logger.exception("triggers.lookup_failed", extra={"booking_id": booking_id, "event": event_type})
        return []
    finally:
        db.close()

    if not work:
        logger.info("triggers.none_applicable", extra={"booking_id": booking_id, "event": event_type})
        return []

    logger.info(
        "triggers.firing",
        extra={"booking_id": booking_id, "event": event_type, "count": len(work)},
    )

    results: List[schemas.DispatchResult] = []
    workers = max(1, min(EVENT_DISPATCH_MAX_WORKERS, len(work)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
        futures = [
            pool.submit(_dispatch_one, organization_id, booking_id, trigger_id, template_id, transport)
            for trigger_id, template_id in work
        ]
        for (trigger_id, _), fut in zip(work, futures):
            try:
                results.append(fut.result())
            except Exception as exc:
                logger.exception("triggers.dispatch_crashed", extra={"booking_id": booking_id, "trigger_id": trigger_id})
                results.append(schemas.DispatchResult(success=False, error=str(exc), error_code="internal_error"))

    succeeded = sum(1 for r in results if r.success)
    logger.info(
        "triggers.complete",
        extra={
            "booking_id": booking_id,
            "event": event_type,
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
        },
    )
    return results


def _log_hook_outcome(fut: Future) -> None:
    with _pending_lock:
        _pending.discard(fut)
    exc = fut.exception()
    if exc is not None:
        logger.error("triggers.hook_failed", exc_info=exc)


def notify_status_change(
    organization_id: str,
    booking_id: str,
    old_status: Optional[str],
    new_status: str,
    transport: Optional[Transport] = None,
) -> Optional[Future]:
    """
    Status-change hook for the booking write path; call after the status change is committed.

    Returns None for a no-op update (same status), otherwise the Future of the background
    evaluation. Never raises into the caller.
    """
    if old_status == new_status:
        return None

    # Any status may follow any other; going back to pending re-fires booking_created
    if new_status == "pending" and old_status is not None:
        logger.warning(
            "triggers.status_regression",
            extra={"booking_id": booking_id, "from": old_status, "to": new_status},
        )

    try:
        fut = _hook_executor.submit(on_status_change, organization_id, booking_id, new_status, transport)
    except Exception:
        logger.exception("triggers.hook_submit_failed", extra={"booking_id": booking_id, "status": new_status})
        return None

    with _pending_lock:
        _pending.add(fut)
    fut.add_done_callback(_log_hook_outcome)
    return fut


def wait_for_pending(timeout: Optional[float] = None) -> bool:
    """Block until queued hook evaluations finish. Returns False on timeout."""
    with _pending_lock:
        outstanding = list(_pending)
    if not outstanding:
        return True
    _, not_done = wait(outstanding, timeout=timeout)
    return not not_done


def should_trigger_fire(db: Session, organization_id: str, trigger_id: str, booking_id: str) -> bool:
    """
    Whether an active trigger applies to a booking right now.

    Checks property scope and guest email; event triggers additionally require the booking's
    current status to be the one their event maps to.
    """
    trigger = (
        db.query(models.MessageTrigger)
        .filter(
            models.MessageTrigger.id == trigger_id,
            models.MessageTrigger.organization_id == organization_id,
        )
        .first()
    )
    if trigger is None or not trigger.is_active:
        return False

    booking = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id, models.Booking.organization_id == organization_id)
        .first()
    )
    if booking is None or not booking.guest_email:
        return False
    if not applies_to_property(trigger, booking.property_id):
        return False

    if trigger.trigger_type == "event" and trigger.event_type:
        return EVENT_TO_STATUS.get(trigger.event_type) == booking.status
    return True
