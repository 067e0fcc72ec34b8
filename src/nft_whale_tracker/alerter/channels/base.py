"""Shared aiohttp plumbing for HTTP notification channels."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class HttpChannel:
    """Base for channels that deliver with a single JSON POST.

    Owns an aiohttp session unless one is injected.
    """

    name = "http"

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout_seconds = timeout_seconds

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _post_json(self, url: str, payload: dict[str, Any]) -> bool:
        """POST `payload`; True on a 2xx response, False on any failure."""
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as resp:
                if 200 <= resp.status < 300:
                    return True
                body = await resp.text()
                logger.warning(
                    "%s channel returned HTTP %d: %s", self.name, resp.status, body[:200]
                )
                return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("%s channel request failed: %s", self.name, e)
            return False
