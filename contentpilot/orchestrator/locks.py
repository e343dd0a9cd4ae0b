"""Redis-based per-item lock primitives for sweep isolation."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "contentpilot:{scope}:{key}:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""

BILLING_SCOPE = "billing"
PUBLISH_SCOPE = "publish"


def resource_lock_key(scope: str, key: str) -> str:
    return LOCK_KEY_TEMPLATE.format(scope=scope, key=key)


@dataclass(frozen=True)
class ResourceLockHandle:
    manager: "ResourceLockManager"
    scope: str
    key: str
    token: str

    def release(self) -> bool:
        return self.manager.release(self.scope, self.key, self.token)


class ResourceLockManager:
    """One lock per (scope, key), e.g. a user's subscription or a post, via SET NX EX."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 300) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, scope: str, key: str) -> ResourceLockHandle | None:
        token = str(uuid.uuid4())
        acquired = self._redis.set(resource_lock_key(scope, key), token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            return None
        return ResourceLockHandle(manager=self, scope=scope, key=key, token=token)

    def release(self, scope: str, key: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, resource_lock_key(scope, key), token)
        return int(released) == 1
