"""Redis store: active-config cache and per-entity write locks.

Redis is optional. Every helper raises RuntimeError when the client was
never initialized; callers catch it (together with RedisError) and fall
back to the database or to in-process locks.

Keys:
- engine:config:active   cached active config snapshot (30 s, dropped on publish)
- engine:lock:<kind>:<id> lock token (30 s for entities, 1 h for a settlement run)
"""

import json
import logging
import uuid
from typing import Any

import redis.asyncio as redis

from repair_engine.settings import get_settings

TTL_CONFIG_SNAPSHOT = 30
TTL_ENTITY_LOCK = 30
TTL_SETTLEMENT_LOCK = 3600

KEY_NAMESPACE = "engine:"
KEY_ACTIVE_CONFIG = f"{KEY_NAMESPACE}config:active"
PREFIX_LOCK = f"{KEY_NAMESPACE}lock:"

# Delete the lock only while it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Connect and ping; raises if the server is unreachable."""
    global _redis
    settings = get_settings()
    client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    await client.ping()
    _redis = client
    logger.info("Redis connected")


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Engine config snapshot cache
# ============================================================


async def get_active_config_cache() -> dict[str, Any] | None:
    """Cached active snapshot as {"version": int, "config": {...}}, or None."""
    raw = await _get_redis().get(KEY_ACTIVE_CONFIG)
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("[redis] dropping unreadable config cache entry")
        await _get_redis().delete(KEY_ACTIVE_CONFIG)
        return None
    return payload if isinstance(payload, dict) else None


async def set_active_config_cache(payload: dict[str, Any]) -> None:
    await _get_redis().setex(KEY_ACTIVE_CONFIG, TTL_CONFIG_SNAPSHOT, json.dumps(payload))


async def invalidate_active_config_cache() -> None:
    await _get_redis().delete(KEY_ACTIVE_CONFIG)


# ============================================================
# Entity locks
# ============================================================


async def acquire_lock(key: str, ttl: int = TTL_ENTITY_LOCK) -> str | None:
    """Try once to take the lock for `key` (e.g. "shop:42").

    Returns the owner token on success, None when someone else holds it.
    """
    token = uuid.uuid4().hex
    ok = await _get_redis().set(f"{PREFIX_LOCK}{key}", token, nx=True, ex=ttl)
    return token if ok else None


async def release_lock(key: str, token: str) -> bool:
    """Release the lock if `token` still owns it; False when it already expired."""
    released = await _get_redis().eval(_RELEASE_SCRIPT, 1, f"{PREFIX_LOCK}{key}", token)
    return bool(released)
