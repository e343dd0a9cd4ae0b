"""Redis connection backing the billing and publish sweep locks."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from contentpilot.core.config import get_settings


# A lock call that hangs would hold a sweep worker past its lock TTL.
_SOCKET_TIMEOUT_SECONDS = 5.0


@lru_cache(maxsize=1)
def get_lock_store() -> Redis:
    """Shared client handed to ``ResourceLockManager`` for the per-user and per-post locks."""
    settings = get_settings()
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=_SOCKET_TIMEOUT_SECONDS,
    )


def check_lock_store() -> Tuple[bool, Optional[str]]:
    try:
        get_lock_store().ping()
        return True, None
    except (RedisError, ValueError) as exc:
        return False, str(exc)
