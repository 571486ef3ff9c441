import logging
from typing import Iterable

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from alchemy.models.schema_models import CombinationSchema

CACHE_KEY_PREFIX = "alchemy:combo:"


def cache_key(combination_key: str) -> str:
    return f"{CACHE_KEY_PREFIX}{combination_key}"


class ResultCache:
    """Redis cache of combination rows keyed by combination key.

    Every operation is best-effort: failures are logged and reported as a
    miss, so the store stays the only source of truth. With ``redis=None``
    the cache is disabled and every read misses.
    """

    def __init__(self, redis: Redis | None, ttl_seconds: int):
        self.redis: Redis | None = redis
        self.ttl_seconds: int = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def get(self, combination_key: str) -> CombinationSchema | None:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(cache_key(combination_key))
        except RedisError as e:
            logging.warning(f"Cache read failed for {combination_key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return CombinationSchema.model_validate_json(raw)
        except ValidationError:
            logging.warning(f"Dropping unreadable cache entry for {combination_key}")
            await self.invalidate([combination_key])
            return None

    async def set(self, row: CombinationSchema) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(cache_key(row.combination_key), row.model_dump_json(), ex=self.ttl_seconds)
        except RedisError as e:
            logging.warning(f"Cache write failed for {row.combination_key}: {e}")

    async def invalidate(self, combination_keys: Iterable[str]) -> int:
        """Delete cache entries; returns the number of keys requested."""
        keys = [cache_key(key) for key in set(combination_keys)]
        if self.redis is None or not keys:
            return len(keys)
        try:
            await self.redis.delete(*keys)
        except RedisError as e:
            logging.warning(f"Cache invalidation failed for {len(keys)} keys: {e}")
        return len(keys)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
