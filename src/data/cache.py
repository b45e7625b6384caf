"""Redis-backed usage counters, keyed by tenant, period and counter."""

from __future__ import annotations

from collections.abc import Mapping

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import get_settings
from src.core.constants import USAGE_KEY_PREFIX
from src.core.exceptions import StoreFetchError, StoreWriteError
from src.core.logging import get_logger

log = get_logger(__name__)


def usage_key(tenant_id: str, period_key: str, counter: str) -> str:
    return f"{USAGE_KEY_PREFIX}:{tenant_id}:{period_key}:{counter}"


class RedisUsageStore:
    """Async Redis store for period-scoped usage counters.

    Keys expire after ``ttl_days`` so closed periods clean themselves up;
    nothing is archived.
    """

    def __init__(self, redis: aioredis.Redis | None = None, ttl_days: int | None = None) -> None:
        self._redis = redis
        self._ttl_seconds = (ttl_days or get_settings().usage_key_ttl_days) * 86_400

    async def connect(self) -> None:
        """Initialize the Redis connection."""
        if self._redis is None:
            settings = get_settings()
            redis_url = settings.redis_url.get_secret_value()
            self._redis = aioredis.from_url(
                redis_url,
                decode_responses=True,
            )
            log.info("redis_connected")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            log.info("redis_closed")

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    # ── Usage Store ──────────────────────────────────────────────

    async def fetch_counters(self, tenant_id: str, keys: Mapping[str, str]) -> dict[str, int]:
        """Read every ``counter -> period_key`` pair in one round trip."""
        counters = list(keys)
        redis_keys = [usage_key(tenant_id, keys[c], c) for c in counters]
        try:
            r = await self._get_redis()
            values = await r.mget(redis_keys)
        except RedisError as exc:
            raise StoreFetchError(
                "usage counters unavailable",
                {"tenant_id": tenant_id, "error": str(exc)},
            ) from exc

        return {counter: _to_int(value) for counter, value in zip(counters, values)}

    async def increment(self, tenant_id: str, counter: str, period_key: str, quantity: int = 1) -> int:
        key = usage_key(tenant_id, period_key, counter)
        try:
            r = await self._get_redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.incrby(key, quantity)
                pipe.expire(key, self._ttl_seconds)
                new_value, _ = await pipe.execute()
        except RedisError as exc:
            raise StoreWriteError(
                "usage counter increment failed",
                {"tenant_id": tenant_id, "counter": counter, "error": str(exc)},
            ) from exc

        log.debug("usage_incremented", tenant_id=tenant_id, counter=counter, value=new_value)
        return int(new_value)

    # ── Health Check ─────────────────────────────────────────────

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            r = await self._get_redis()
            return await r.ping()
        except RedisError:
            return False


def _to_int(value: object) -> int:
    if value is None:
        return 0
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0
