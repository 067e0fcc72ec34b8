"""Redis read-through cache for computed metrics."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsCacheConfig:
    key_prefix: str = "nft:metrics:"
    ttl_seconds: int = 600


class MetricsCache:
    """JSON values keyed by metric id and time-window tag.

      key = {prefix}{metric}:{window}
      value = JSON document

    Redis failures are logged and behave as a miss: the cache is an
    optimization, never a source of truth.
    """

    def __init__(self, redis: Redis, *, config: MetricsCacheConfig | None = None) -> None:
        self._redis = redis
        self._config = config or MetricsCacheConfig()

    def _key(self, metric: str, window: str) -> str:
        return f"{self._config.key_prefix}{metric}:{window}"

    async def get(self, metric: str, window: str) -> Any | None:
        key = self._key(metric, window)
        try:
            raw = await self._redis.get(key)
        except RedisError as e:
            logger.warning("Metrics cache get failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        text = raw.decode() if isinstance(raw, bytes) else str(raw)
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt metrics cache entry %s", key)
            return None

    async def set(self, metric: str, window: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        key = self._key(metric, window)
        try:
            await self._redis.set(
                key,
                json.dumps(value, default=str),
                ex=ttl_seconds or self._config.ttl_seconds,
            )
        except RedisError as e:
            logger.warning("Metrics cache set failed for %s: %s", key, e)
            return False
        return True

    async def invalidate(self, metric: str, window: str) -> None:
        key = self._key(metric, window)
        try:
            await self._redis.delete(key)
        except RedisError as e:
            logger.warning("Metrics cache invalidate failed for %s: %s", key, e)

    async def get_or_compute(
        self,
        metric: str,
        window: str,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        cached = await self.get(metric, window)
        if cached is not None:
            return cached
        value = await compute()
        await self.set(metric, window, value)
        return value
