# Optional shared Redis connection used for cross-process coordination (sweep and booking locks).
# Off unless REDIS_ENABLED is truthy; any connection problem degrades to "no Redis".
import logging
import os
from typing import Optional

import redis

logger = logging.getLogger("stayflow.redis")

_TRUTHY = {"1", "true", "t", "yes", "y", "on"}

_client = None
_attempted = False


def is_redis_enabled() -> bool:
    return os.getenv("REDIS_ENABLED", "false").strip().lower() in _TRUTHY


def get_redis():
    """
    Return a connected Redis client, or None when Redis is disabled or unreachable.

    The first failed connection attempt is remembered for the life of the process so callers
    don't pay a connect timeout on every lock.
    """
    global _client, _attempted
    if not is_redis_enabled():
        return None
    if _client is not None or _attempted:
        return _client

    url: Optional[str] = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    _attempted = True
    try:
        client = redis.Redis.from_url(
            url,
            socket_timeout=0.25,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
        )
        client.ping()
    except Exception as exc:
        logger.warning("redis.unavailable", extra={"url": url, "error": str(exc)})
        return None

    _client = client
    logger.info("redis.connected", extra={"url": url})
    return _client


def reset_redis() -> None:
    """Forget the cached client (tests, or after REDIS_* settings change)."""
    global _client, _attempted
    _client = None
    _attempted = False
