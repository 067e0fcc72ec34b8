"""Best-effort delivery of alert firings and event broadcasts.

The dispatcher never raises into its callers: channel failures are
logged and counted in the returned DispatchResult.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from nft_whale_tracker.alerter.formatter import AlertFormatter
from nft_whale_tracker.alerter.models import AlertHistoryItem, AlertRule, Channel, FormattedAlert

logger = logging.getLogger(__name__)

# Accepted on rules, but this package ships no transport for them.
UNSUPPORTED_CHANNELS = frozenset({Channel.EMAIL, Channel.PUSH})


class AlertChannel(Protocol):
    """A delivery transport."""

    name: str

    async def send(self, alert: FormattedAlert) -> bool: ...


class Broadcaster(Protocol):
    """Pushes event envelopes to real-time subscribers."""

    async def publish(self, envelope: dict[str, Any]) -> int: ...


@dataclass
class DispatchResult:
    """Outcome of delivering one alert."""

    success_count: int = 0
    failure_count: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0


class NotificationDispatcher:
    """Routes fired alerts to the channels named on their rule.

    Example:
        ```python
        dispatcher = NotificationDispatcher(
            [TelegramChannel(token, chat_id)],
            broadcaster=RedisBroadcaster(redis),
        )
        engine = AlertRuleEngine(store, notifier=dispatcher)
        ```
    """

    def __init__(
        self,
        channels: Iterable[AlertChannel] = (),
        *,
        formatter: AlertFormatter | None = None,
        broadcaster: Broadcaster | None = None,
        dry_run: bool = False,
    ) -> None:
        self._channels: dict[str, AlertChannel] = {c.name: c for c in channels}
        self._formatter = formatter or AlertFormatter()
        self._broadcaster = broadcaster
        self._dry_run = dry_run

    @property
    def channel_names(self) -> list[str]:
        return sorted(self._channels)

    async def notify(self, rule: AlertRule, item: AlertHistoryItem) -> DispatchResult:
        """Deliver a firing to every configured channel named on the rule."""
        result = DispatchResult()
        targets: list[AlertChannel] = []
        for channel in rule.channels:
            if channel in UNSUPPORTED_CHANNELS:
                logger.debug("No %s transport; skipping alert %s", channel.value, rule.name)
                result.skipped.append(channel.value)
                continue
            transport = self._channels.get(channel.value)
            if transport is None:
                logger.warning(
                    "%s notification skipped for %s: channel not configured",
                    channel.value,
                    rule.name,
                )
                result.skipped.append(channel.value)
                continue
            targets.append(transport)

        if not targets:
            return result

        formatted = self._formatter.format(rule, item)

        if self._dry_run:
            logger.info(
                "[DRY RUN] Would send alert: rule=%s, channels=%s",
                rule.name,
                ",".join(t.name for t in targets),
            )
            return result

        outcomes = await asyncio.gather(
            *(t.send(formatted) for t in targets),
            return_exceptions=True,
        )
        for transport, outcome in zip(targets, outcomes, strict=True):
            if outcome is True:
                result.success_count += 1
                logger.info("%s notification sent for alert: %s", transport.name, rule.name)
            else:
                result.failure_count += 1
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "%s notification failed for alert %s: %s", transport.name, rule.name, outcome
                    )
                else:
                    logger.warning("%s notification failed for alert %s", transport.name, rule.name)

        if not result.all_succeeded:
            logger.warning(
                "Alert partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )
        return result

    async def broadcast(self, envelope: dict[str, Any]) -> bool:
        """Publish an event envelope. Returns False if nothing was published."""
        if self._broadcaster is None:
            return False
        try:
            await self._broadcaster.publish(envelope)
        except Exception as e:
            logger.warning("Broadcast of %s failed: %s", envelope.get("type", "?"), e)
            return False
        return True

    async def close(self) -> None:
        for channel in self._channels.values():
            close = getattr(channel, "close", None)
            if close is not None:
                await close()
