"""Telegram Bot API channel."""

from __future__ import annotations

import aiohttp

from nft_whale_tracker.alerter.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpChannel
from nft_whale_tracker.alerter.models import FormattedAlert

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramChannel(HttpChannel):
    """Sends alerts to a Telegram chat with parse_mode=HTML."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(session=session, timeout_seconds=timeout_seconds)
        self._url = TELEGRAM_API_URL.format(token=bot_token)
        self._chat_id = chat_id

    async def send(self, alert: FormattedAlert) -> bool:
        return await self._post_json(
            self._url,
            {
                "chat_id": self._chat_id,
                "text": alert.telegram_html,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
        )
