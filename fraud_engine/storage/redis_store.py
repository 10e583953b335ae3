"""
Redis Store

Records are JSON strings under {prefix}{key}. Sorted indexes are ZSETs
(members are record keys, scores are epoch milliseconds), the same
technique used for sliding-window velocity counters. Counters use INCR.

Optimistic writes use WATCH/MULTI: the transaction aborts if another
client touched the key between the read and the write.
"""

import json
import logging
import re
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .base import KeyValueStore

logger = logging.getLogger("fraud_engine.storage")


def _glob_escape(value: str) -> str:
    """Escape SCAN MATCH metacharacters so the prefix matches literally."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)


class RedisStore(KeyValueStore):
    """
    Key-value store backed by Redis.

    Key format: {prefix}{family}:{id}
    Index format: {prefix}idx:{index}
    Counter format: {prefix}seq:{name}
    """

    backend = "redis"

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "fraud_engine:",
    ):
        """
        Initialize Redis store.

        Args:
            redis_client: Async Redis client created with decode_responses=True
            key_prefix: Prefix for all Redis keys
        """
        self.redis = redis_client
        self.prefix = key_prefix

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        """Create a store with a client built from settings."""
        client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            decode_responses=True,
        )
        return cls(client, key_prefix=settings.redis_key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _index_key(self, index: str) -> str:
        return f"{self.prefix}idx:{index}"

    def _sequence_key(self, name: str) -> str:
        return f"{self.prefix}seq:{name}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            raise

    async def close(self) -> None:
        await self.redis.aclose()

    async def health_check(self) -> bool:
        return bool(await self.redis.ping())

    # =========================================================================
    # Records
    # =========================================================================

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self.redis.get(self._key(key))
        return json.loads(raw) if raw else None

    async def get_many(self, keys: list[str]) -> list[dict[str, Any]]:
        if not keys:
            return []
        raws = await self.redis.mget([self._key(k) for k in keys])
        return [json.loads(raw) for raw in raws if raw]

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await self.redis.set(self._key(key), json.dumps(value))

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(self._key(key)) > 0

    async def compare_and_set(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int],
    ) -> bool:
        full_key = self._key(key)
        new_version = 1 if expected_version is None else expected_version + 1
        record = {**value, "version": new_version}

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(full_key)
                raw = await pipe.get(full_key)

                if expected_version is None:
                    if raw is not None:
                        await pipe.unwatch()
                        return False
                else:
                    if raw is None or json.loads(raw).get("version", 0) != expected_version:
                        await pipe.unwatch()
                        return False

                pipe.multi()
                pipe.set(full_key, json.dumps(record))
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def scan(self, prefix: str) -> list[dict[str, Any]]:
        keys = [key async for key in self.redis.scan_iter(match=f"{_glob_escape(self._key(prefix))}*")]
        if not keys:
            return []
        keys.sort()
        raws = await self.redis.mget(keys)
        return [json.loads(raw) for raw in raws if raw]

    # =========================================================================
    # Counters
    # =========================================================================

    async def next_sequence(self, name: str) -> int:
        return int(await self.redis.incr(self._sequence_key(name)))

    # =========================================================================
    # Sorted Indexes
    # =========================================================================

    async def index_add(self, index: str, member: str, score: float) -> None:
        await self.redis.zadd(self._index_key(index), {member: score})

    async def index_range(
        self,
        index: str,
        min_score: float,
        max_score: float,
    ) -> list[str]:
        return await self.redis.zrangebyscore(self._index_key(index), min_score, max_score)

    async def index_tail(self, index: str, count: int) -> list[str]:
        if count <= 0:
            return []
        return await self.redis.zrange(self._index_key(index), -count, -1)

    async def index_remove_below(self, index: str, score: float) -> list[str]:
        key = self._index_key(index)
        upper = f"({score}"

        # Read and remove atomically
        pipe = self.redis.pipeline(transaction=True)
        pipe.zrangebyscore(key, "-inf", upper)
        pipe.zremrangebyscore(key, "-inf", upper)
        results = await pipe.execute()
        return results[0]
