"""Per-entity write serialization.

Uses a Redis SET NX lock when Redis is available so several API processes
agree on a single writer; falls back to an in-process asyncio.Lock when
Redis is not initialized or unreachable.
"""

import asyncio
import logging
import weakref
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from redis.exceptions import RedisError

from repair_engine.services.errors import Conflict
from repair_engine.settings import get_settings
from repair_engine.stores.redis import acquire_lock, release_lock

logger = logging.getLogger("uvicorn.error")

_local_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

_RETRY_SLEEP_S = 0.05


async def _acquire_redis(key: str, ttl: int, wait_s: float) -> tuple[bool, str | None]:
    """Return (redis_available, token); token is None when the wait timed out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + wait_s
    while True:
        try:
            token = await acquire_lock(key, ttl=ttl)
        except (RuntimeError, RedisError):
            return False, None
        if token is not None:
            return True, token
        if loop.time() >= deadline:
            return True, None
        await asyncio.sleep(_RETRY_SLEEP_S)


@asynccontextmanager
async def entity_lock(
    kind: str,
    entity_id: int | str,
    *,
    ttl: int | None = None,
    wait_s: float | None = None,
) -> AsyncGenerator[None, None]:
    """Serialize writers of one entity (e.g. entity_lock("shop", 42)).

    Raises:
        Conflict: LOCK_TIMEOUT when the Redis lock could not be taken in time.
    """
    settings = get_settings()
    key = f"{kind}:{entity_id}"
    available, token = await _acquire_redis(
        key,
        ttl if ttl is not None else settings.entity_lock_ttl_s,
        wait_s if wait_s is not None else settings.entity_lock_wait_s,
    )

    if not available:
        lock = _local_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            _local_locks[key] = lock
        async with lock:
            yield
        return

    if token is None:
        raise Conflict("LOCK_TIMEOUT", f"{kind} {entity_id} is being updated, retry later", {"key": key})

    try:
        yield
    finally:
        try:
            if not await release_lock(key, token):
                logger.warning(f"[locks] key={key} expired before release; the holder overran its TTL")
        except (RuntimeError, RedisError):
            logger.warning(f"[locks] release failed key={key}; it expires with its TTL")
