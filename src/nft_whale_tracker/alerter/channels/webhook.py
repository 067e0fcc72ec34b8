"""Generic JSON webhook channel."""

from __future__ import annotations

import aiohttp

from nft_whale_tracker.alerter.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpChannel
from nft_whale_tracker.alerter.models import FormattedAlert


class WebhookChannel(HttpChannel):
    """POSTs the alert's webhook payload to a configured URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(session=session, timeout_seconds=timeout_seconds)
        self._url = url

    async def send(self, alert: FormattedAlert) -> bool:
        return await self._post_json(self._url, alert.webhook_payload)
