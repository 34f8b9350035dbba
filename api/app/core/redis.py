import redis

from app.core.config import settings

# Shared Redis client (created lazily, reused by the worker process)
_redis: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


# ─── Refresh startup claim ─────────────────────────────────────────────────────

_STARTUP_KEY = "refresh:startup"


def claim_refresh_startup(owner: str, ttl_seconds: int) -> bool:
    """Return True if this node won the startup pass for the current window."""
    return bool(get_redis().set(_STARTUP_KEY, owner, nx=True, ex=ttl_seconds))
