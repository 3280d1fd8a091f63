# Periodic trigger endpoint for the hourly scheduled-message sweep.
# Called by an external scheduler with `Authorization: Bearer $CRON_SECRET`; safe to call by hand.
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, status
from fastapi.responses import JSONResponse

from .. import schemas
from ..sweepers import sweep_scheduled_messages
from .auth import cron_secret, is_valid_cron_token

router = APIRouter()
logger = logging.getLogger("stayflow.cron")


@router.api_route("/cron/process-scheduled-messages", methods=["GET", "POST"])
def process_scheduled_messages(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> JSONResponse:
    """
    Run one sweep and report its stats.

    Responses:
    - 500 {"error"} when CRON_SECRET is not configured
    - 401 {"error"} when the bearer token does not match
    - 200 {"success", "timestamp", "stats": {processed, sent, failed, skipped}}
    """
    secret = cron_secret()
    if not secret:
        logger.error("cron.not_configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Cron job is not configured"},
        )

    if not is_valid_cron_token(authorization, secret):
        logger.warning("cron.unauthorized")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Unauthorized"})

    try:
        stats = sweep_scheduled_messages()
    except Exception as exc:
        logger.exception("cron.sweep_failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "message": str(exc) or "Unknown error"},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=schemas.CronResponse(
            success=True,
            timestamp=datetime.now(timezone.utc),
            stats=stats,
        ).model_dump(mode="json"),
    )
