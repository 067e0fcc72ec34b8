"""Ethereum JSON-RPC client with rate limiting, failover and caching.

This module provides the chain access used by the transfer event source:
- Redis caching of immutable lookups (blocks, transactions)
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
"""

import asyncio
import json
import logging
import time
from typing import Any, cast

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from nft_whale_tracker.ingestor.models import EventSourceError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 3600  # blocks and mined transactions do not change
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30

HTTP_TOO_MANY_REQUESTS = 429

# Errors raised by web3's async HTTP provider for a failed call.
_TRANSIENT_ERRORS = (Web3Exception, aiohttp.ClientError, TimeoutError)


class ChainClientError(EventSourceError):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when RPC call fails."""


class RateLimitError(RPCError):
    """Raised when the provider keeps rejecting calls with HTTP 429."""


def _is_rate_limited(error: BaseException) -> bool:
    return isinstance(error, aiohttp.ClientResponseError) and error.status == HTTP_TOO_MANY_REQUESTS


class RequestPacer:
    """Spaces calls at least `1 / max_requests_per_second` apart.

    Each caller reserves the next free slot before sleeping, so concurrent
    callers queue up in arrival order.
    """

    def __init__(self, max_requests_per_second: float) -> None:
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be positive")
        self._interval = 1.0 / max_requests_per_second
        self._next_slot = 0.0

    async def wait(self) -> None:
        now = time.monotonic()
        slot = max(now, self._next_slot)
        self._next_slot = slot + self._interval
        if slot > now:
            await asyncio.sleep(slot - now)


class ChainClient:
    """Ethereum RPC client with caching and rate limiting.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        client = ChainClient(
            rpc_url="https://ethereum-rpc.publicnode.com",
            fallback_rpc_url="https://eth.llamarpc.com",
            redis=redis,
        )

        head = await client.get_block_number()
        logs = await client.get_logs({"address": "0x...", "fromBlock": head - 10, "toBlock": head})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary Ethereum RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
            request_timeout: Per-request HTTP timeout in seconds.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._pacer = RequestPacer(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

        self._cache_prefix = "eth:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": self._request_timeout})
        )

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_with_retries(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any, BaseException | None]:
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args), None
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RateLimitError: If the last failure was an HTTP 429.
            RPCError: If all retries and failover fail.
        """
        await self._pacer.wait()

        last_error: BaseException | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_with_retries(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, fallback_error = await self._call_with_retries(
                self._w3_fallback, "Fallback", func_name, *args
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = fallback_error or last_error

        if last_error is not None and _is_rate_limited(last_error):
            raise RateLimitError(f"RPC call {func_name} rate limited: {last_error}")
        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_block_number(self) -> int:
        """Current chain head height. Never cached."""
        latest = await self._execute_with_retry("get_block", "latest")
        return int(latest["number"])

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get block header by number (without transactions)."""
        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self._execute_with_retry("get_block", block_number)

        header = {"number": int(block["number"]), "timestamp": int(block["timestamp"])}
        await self._set_cached(cache_key, json.dumps(header))
        return header

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        """Get a mined transaction. `value` is returned as an int in wei."""
        cache_key = f"{self._cache_prefix}tx:{tx_hash.lower()}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        tx = await self._execute_with_retry("get_transaction", tx_hash)

        recipient = tx.get("to")
        summary = {
            "hash": tx_hash.lower(),
            "from": str(tx.get("from") or "").lower(),
            "to": str(recipient).lower() if recipient else None,
            "value": int(tx.get("value") or 0),
        }
        await self._set_cached(cache_key, json.dumps(summary))
        return summary

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Disconnect the primary and fallback providers."""
        for w3 in (self._w3, self._w3_fallback):
            if w3 is None:
                continue
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
