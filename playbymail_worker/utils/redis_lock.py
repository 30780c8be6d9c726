"""Redis locks that keep periodic sweeps from overlapping across workers.

Each lock stores a random owner token, so a sweep that outlives its timeout
cannot release a lock another sweep has taken since.
"""
from __future__ import annotations

import secrets
from functools import lru_cache

import redis

from ..config import settings
from ..logging import logger

SWEEP_LOCK_TIMEOUT = 300

# Deletes the key only while it still holds the caller's token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@lru_cache(maxsize=1)
def _client() -> redis.Redis:
    return redis.from_url(settings.redis_url)


def acquire_redis_lock(name: str, timeout: int = SWEEP_LOCK_TIMEOUT) -> str | None:
    """Take ``name`` for ``timeout`` seconds.

    Returns the owner token, or None when another worker holds the lock. If
    Redis is unreachable the caller still gets a token: sweeps only enqueue
    jobs keyed by natural key, so an unguarded run is harmless.
    """
    token = secrets.token_hex(8)
    try:
        acquired = _client().set(name, token, nx=True, ex=timeout)
    except redis.RedisError as exc:
        logger.warning("redis_lock_unavailable", lock=name, error=str(exc))
        return token
    return token if acquired else None


def release_redis_lock(name: str, token: str) -> None:
    try:
        released = _client().eval(_RELEASE_SCRIPT, 1, name, token)
    except redis.RedisError as exc:
        logger.warning("redis_unlock_failed", lock=name, error=str(exc))
        return
    if not released:
        logger.warning("redis_lock_expired_before_release", lock=name)
