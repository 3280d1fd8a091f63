# Request-level identity helpers.
# User sessions are handled upstream; this service only receives the resolved tenant id and,
# for the cron endpoint, a shared-secret bearer token.
from __future__ import annotations

import hmac
import os
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models


def cron_secret() -> str:
    # Read per request so rotating CRON_SECRET does not need a restart
    return os.getenv("CRON_SECRET", "").strip()


def bearer_token_from_auth_header(authorization: Optional[str]) -> Optional[str]:
    """Return the token of an `Authorization: Bearer <token>` header, or None."""
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip()


def is_valid_cron_token(authorization: Optional[str], secret: str) -> bool:
    token = bearer_token_from_auth_header(authorization)
    if not token or not secret:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def get_organization_id(
    db: Session = Depends(get_db),
    x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
) -> str:
    """
    Tenant for the request, passed explicitly by the upstream session layer.

    Every downstream query filters on the returned id.
    """
    if not x_organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Organization header missing")
    org = db.get(models.Organization, x_organization_id)
    if not org:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown organization")
    return org.id
