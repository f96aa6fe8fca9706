"""Redis client for sessions, generation locks and rate limiting"""
import logging
import secrets
from typing import Optional

import redis

from ideaverse.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60

if settings.ENVIRONMENT == "development":
    RATE_LIMIT_WINDOW = 60
    RATE_LIMIT_REQUESTS = 1000
    RATE_LIMIT_STRICT_REQUESTS = 1000
else:
    RATE_LIMIT_WINDOW = 60
    RATE_LIMIT_REQUESTS = 300
    RATE_LIMIT_STRICT_REQUESTS = 60  # state-changing requests


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    get_redis_client().setex(f"session:{session_id}", SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None


def delete_session(session_id: str) -> None:
    """Delete session from Redis"""
    get_redis_client().delete(f"session:{session_id}")


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment the fixed-window counter for identifier and return the new count."""
    key = f"ratelimit:{identifier}"
    client = get_redis_client()
    count = client.incr(key)
    if count == 1:
        # First hit opens the window
        client.expire(key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Returns True if the request is allowed, False if rate limited."""
    max_requests = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS
    return increment_rate_limit(identifier, RATE_LIMIT_WINDOW) <= max_requests


def acquire_lock(lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    The key holds a random owner token so that only the holder can release it.

    Returns:
        The owner token if the lock was acquired, None if the lock already exists
    """
    token = secrets.token_urlsafe(32)
    if get_redis_client().set(lock_key, token, nx=True, ex=timeout):
        return token
    return None


def release_lock(lock_key: str, token: str) -> bool:
    """Release a distributed lock only if it is still held by ``token``.

    A lock that expired and was taken by another request is left alone.

    Returns:
        True if the key was deleted
    """
    with get_redis_client().pipeline() as pipe:
        try:
            pipe.watch(lock_key)
            if pipe.get(lock_key) != token:
                pipe.unwatch()
                logger.warning(f"Lock {lock_key} no longer held by this request, not releasing")
                return False
            pipe.multi()
            pipe.delete(lock_key)
            pipe.execute()
            return True
        except redis.WatchError:
            logger.warning(f"Lock {lock_key} changed while releasing, not releasing")
            return False


def generation_lock_key(user_id: int) -> str:
    return f"generation_lock:{user_id}"
