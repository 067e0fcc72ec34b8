"""Real-time event broadcast over Redis pub/sub."""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "nft:events"


class RedisBroadcaster:
    """Publishes JSON event envelopes on a Redis channel.

    Envelopes look like ``{"type": "transaction:new", "data": {...},
    "timestamp": 1700000000000}``. Subscribers (e.g. a websocket gateway)
    fan them out to clients.
    """

    def __init__(self, redis: Redis, *, channel: str = DEFAULT_CHANNEL) -> None:
        self._redis = redis
        self._channel = channel

    @property
    def channel(self) -> str:
        return self._channel

    async def publish(self, envelope: dict[str, Any]) -> int:
        """Publish an envelope. Returns the number of subscribers that got it."""
        receivers = int(await self._redis.publish(self._channel, json.dumps(envelope, default=str)))
        logger.debug("Published %s to %s (%d receivers)", envelope.get("type"), self._channel, receivers)
        return receivers
