# Best-effort cross-process locks on top of Redis SET NX PX.
# When Redis is off or errors, the lock is reported as held so callers keep working;
# correctness never depends on these locks (the idempotency ledger's unique key does).
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator
from uuid import uuid4

from .redis_client import get_redis

logger = logging.getLogger("stayflow.locks")

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

SWEEP_LOCK_KEY = "lock:sweep:scheduled-messages"


def property_lock_key(property_id: str) -> str:
    return f"lock:booking:property:{property_id}"


@contextmanager
def try_lock(key: str, ttl_ms: int = 5000) -> Iterator[bool]:
    """
    Yield True when this process may enter the critical section.

    False means another holder owns `key`; the TTL bounds how long a crashed holder blocks others.

        with try_lock(SWEEP_LOCK_KEY, ttl_ms=55 * 60 * 1000) as locked:
            if not locked:
                return
    """
    r = get_redis()
    if r is None:
        yield True
        return

    token = uuid4().hex
    try:
        acquired = bool(r.set(key, token, nx=True, px=ttl_ms))
    except Exception as exc:
        logger.warning("lock.acquire.failed", extra={"key": key, "error": str(exc)})
        yield True
        return

    try:
        yield acquired
    finally:
        if acquired:
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except Exception as exc:
                # TTL will clean it up
                logger.debug("lock.release.failed", extra={"key": key, "error": str(exc)})
