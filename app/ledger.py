# Idempotency ledger: one row per (booking, trigger) whose message the email provider accepted.
# The UNIQUE idempotency_key is the only thing that arbitrates concurrent dispatchers.
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("stayflow.ledger")


def idempotency_key(booking_id: str, trigger_id: str) -> str:
    return f"{booking_id}-{trigger_id}"


def get_record(db: Session, booking_id: str, trigger_id: str) -> Optional[models.MessageIdempotency]:
    return (
        db.query(models.MessageIdempotency)
        .filter(models.MessageIdempotency.idempotency_key == idempotency_key(booking_id, trigger_id))
        .first()
    )


def has_sent(db: Session, booking_id: str, trigger_id: str) -> bool:
    return get_record(db, booking_id, trigger_id) is not None


def record_sent(
    db: Session,
    organization_id: str,
    booking_id: str,
    trigger_id: str,
    sent_message_id: Optional[str],
) -> bool:
    """
    Insert the ledger row for a successfully delivered message and commit.

    Returns False when the key already exists: another dispatcher won the race, which means
    the message counts as already sent. Must only be called after the transport accepted the
    message, so failed attempts stay retryable.
    """
    row = models.MessageIdempotency(
        organization_id=organization_id,
        booking_id=booking_id,
        trigger_id=trigger_id,
        idempotency_key=idempotency_key(booking_id, trigger_id),
        sent_message_id=sent_message_id,
    )
    try:
        db.add(row)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "ledger.duplicate",
            extra={
                "organization_id": organization_id,
                "booking_id": booking_id,
                "trigger_id": trigger_id,
                "sent_message_id": sent_message_id,
            },
        )
        return False
    return True
