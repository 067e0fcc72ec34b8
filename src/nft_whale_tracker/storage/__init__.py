"""Storage layer - Redis metrics cache and event broadcast."""

from nft_whale_tracker.storage.broadcast import RedisBroadcaster
from nft_whale_tracker.storage.cache import MetricsCache, MetricsCacheConfig

__all__ = [
    "MetricsCache",
    "MetricsCacheConfig",
    "RedisBroadcaster",
]
