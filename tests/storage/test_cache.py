"""Tests for the Redis metrics cache and broadcaster."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from nft_whale_tracker.storage.broadcast import RedisBroadcaster
from nft_whale_tracker.storage.cache import MetricsCache, MetricsCacheConfig


@pytest.fixture
def redis() -> MagicMock:
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.set = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    mock.publish = AsyncMock(return_value=3)
    return mock


@pytest.fixture
def cache(redis: MagicMock) -> MetricsCache:
    return MetricsCache(redis, config=MetricsCacheConfig(key_prefix="test:", ttl_seconds=60))


class TestMetricsCache:
    """Tests for MetricsCache."""

    @pytest.mark.asyncio
    async def test_hit(self, cache: MetricsCache, redis: MagicMock) -> None:
        redis.get.return_value = b'{"volume": "2.5000"}'

        assert await cache.get("trading_metrics", "24h") == {"volume": "2.5000"}
        redis.get.assert_awaited_once_with("test:trading_metrics:24h")

    @pytest.mark.asyncio
    async def test_miss(self, cache: MetricsCache) -> None:
        assert await cache.get("trading_metrics", "24h") is None

    @pytest.mark.asyncio
    async def test_redis_error_is_a_miss(self, cache: MetricsCache, redis: MagicMock) -> None:
        redis.get.side_effect = RedisConnectionError("down")

        assert await cache.get("holder_stats", "current") is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, cache: MetricsCache, redis: MagicMock) -> None:
        redis.get.return_value = b"{not json"

        assert await cache.get("holder_stats", "current") is None

    @pytest.mark.asyncio
    async def test_set_uses_ttl(self, cache: MetricsCache, redis: MagicMock) -> None:
        assert await cache.set("holder_stats", "current", {"total_holders": 3}) is True

        redis.set.assert_awaited_once_with("test:holder_stats:current", '{"total_holders": 3}', ex=60)

    @pytest.mark.asyncio
    async def test_set_ttl_override(self, cache: MetricsCache, redis: MagicMock) -> None:
        await cache.set("holder_stats", "current", {}, ttl_seconds=5)

        assert redis.set.await_args.kwargs["ex"] == 5

    @pytest.mark.asyncio
    async def test_set_failure(self, cache: MetricsCache, redis: MagicMock) -> None:
        redis.set.side_effect = RedisConnectionError("down")

        assert await cache.set("holder_stats", "current", {}) is False

    @pytest.mark.asyncio
    async def test_invalidate(self, cache: MetricsCache, redis: MagicMock) -> None:
        await cache.invalidate("holder_stats", "current")

        redis.delete.assert_awaited_once_with("test:holder_stats:current")

    @pytest.mark.asyncio
    async def test_get_or_compute(self, cache: MetricsCache, redis: MagicMock) -> None:
        compute = AsyncMock(return_value={"floor": "1.5"})

        assert await cache.get_or_compute("trading_metrics", "1h", compute) == {"floor": "1.5"}
        compute.assert_awaited_once()
        redis.set.assert_awaited_once()

        redis.get.return_value = json.dumps({"floor": "1.4"}).encode()
        assert await cache.get_or_compute("trading_metrics", "1h", compute) == {"floor": "1.4"}
        compute.assert_awaited_once()


class TestRedisBroadcaster:
    """Tests for RedisBroadcaster."""

    @pytest.mark.asyncio
    async def test_publish(self, redis: MagicMock) -> None:
        broadcaster = RedisBroadcaster(redis, channel="events")
        envelope = {"type": "transaction:new", "data": {"token_id": 1}, "timestamp": 1}

        assert await broadcaster.publish(envelope) == 3

        channel, payload = redis.publish.await_args.args
        assert channel == "events"
        assert json.loads(payload) == envelope

    @pytest.mark.asyncio
    async def test_publish_error_propagates(self, redis: MagicMock) -> None:
        redis.publish.side_effect = RedisConnectionError("down")

        with pytest.raises(RedisConnectionError):
            await RedisBroadcaster(redis).publish({"type": "x"})
