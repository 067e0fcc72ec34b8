"""Tests for the chain client retry, failover and caching logic."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from web3.exceptions import Web3Exception

from nft_whale_tracker.ingestor.chain import ChainClient, RateLimitError, RequestPacer, RPCError


def _w3(**methods: AsyncMock) -> MagicMock:
    w3 = MagicMock()
    for name, method in methods.items():
        setattr(w3.eth, name, method)
    return w3


@pytest.fixture
def client() -> ChainClient:
    return ChainClient(
        "http://primary.invalid",
        max_requests_per_second=1000,
        max_retries=2,
        retry_delay_seconds=0,
    )


class TestChainClient:
    """Tests for ChainClient."""

    @pytest.mark.asyncio
    async def test_get_block_number(self, client: ChainClient) -> None:
        client._w3 = _w3(get_block=AsyncMock(return_value={"number": 19_000_000}))

        assert await client.get_block_number() == 19_000_000
        client._w3.eth.get_block.assert_awaited_once_with("latest")

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, client: ChainClient) -> None:
        client._w3 = _w3(get_logs=AsyncMock(side_effect=[Web3Exception("flaky"), [{"logIndex": 0}]]))

        assert await client.get_logs({"fromBlock": 1, "toBlock": 2}) == [{"logIndex": 0}]
        assert client._w3.eth.get_logs.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        client = ChainClient(
            "http://primary.invalid",
            fallback_rpc_url="http://fallback.invalid",
            max_requests_per_second=1000,
            max_retries=1,
            retry_delay_seconds=0,
        )
        client._w3 = _w3(get_block=AsyncMock(side_effect=TimeoutError()))
        client._w3_fallback = _w3(get_block=AsyncMock(return_value={"number": 5}))

        assert await client.get_block_number() == 5

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, client: ChainClient) -> None:
        client._w3 = _w3(get_logs=AsyncMock(side_effect=aiohttp.ClientConnectionError("refused")))

        with pytest.raises(RPCError):
            await client.get_logs({})

    @pytest.mark.asyncio
    async def test_rate_limited(self, client: ChainClient) -> None:
        error = aiohttp.ClientResponseError(MagicMock(), (), status=429, message="Too Many Requests")
        client._w3 = _w3(get_logs=AsyncMock(side_effect=error))

        with pytest.raises(RateLimitError):
            await client.get_logs({})

    @pytest.mark.asyncio
    async def test_get_block_is_cached(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client = ChainClient("http://primary.invalid", redis=redis, max_requests_per_second=1000)
        client._w3 = _w3(
            get_block=AsyncMock(return_value={"number": 10, "timestamp": 1700000000, "transactions": []})
        )

        block = await client.get_block(10)

        assert block == {"number": 10, "timestamp": 1700000000}
        key, value = redis.set.await_args.args
        assert key == "eth:block:10"
        assert json.loads(value) == block

    @pytest.mark.asyncio
    async def test_cache_hit_skips_rpc(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=b'{"value": 7, "to": "0xabc"}')
        client = ChainClient("http://primary.invalid", redis=redis, max_requests_per_second=1000)
        client._w3 = _w3(get_transaction=AsyncMock())

        tx = await client.get_transaction("0xABC")

        assert tx == {"value": 7, "to": "0xabc"}
        redis.get.assert_awaited_once_with("eth:tx:0xabc")
        client._w3.eth.get_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check(self, client: ChainClient) -> None:
        client._w3 = _w3(get_block=AsyncMock(side_effect=Web3Exception("down")))

        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_get_transaction_keeps_sale_fields(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client = ChainClient("http://primary.invalid", redis=redis, max_requests_per_second=1000)
        client._w3 = _w3(
            get_transaction=AsyncMock(
                return_value={
                    "from": "0x" + "A" * 40,
                    "to": "0x" + "B" * 40,
                    "value": 10**18,
                    "input": b"\x01\x02",
                }
            )
        )

        tx = await client.get_transaction("0xABC")

        assert tx == {"hash": "0xabc", "from": "0x" + "a" * 40, "to": "0x" + "b" * 40, "value": 10**18}
        key, value = redis.set.await_args.args
        assert key == "eth:tx:0xabc"
        assert json.loads(value) == tx

    @pytest.mark.asyncio
    async def test_contract_creation_has_no_recipient(self, client: ChainClient) -> None:
        client._w3 = _w3(get_transaction=AsyncMock(return_value={"from": "0x1", "to": None, "value": 0}))

        assert (await client.get_transaction("0x1"))["to"] is None

    @pytest.mark.asyncio
    async def test_aclose_disconnects_providers(self) -> None:
        client = ChainClient("http://primary.invalid", fallback_rpc_url="http://fallback.invalid")
        client._w3 = MagicMock()
        client._w3.provider.disconnect = AsyncMock()
        client._w3_fallback = MagicMock()
        client._w3_fallback.provider.disconnect = AsyncMock(side_effect=RuntimeError("closed"))

        await client.aclose()

        client._w3.provider.disconnect.assert_awaited_once()
        client._w3_fallback.provider.disconnect.assert_awaited_once()


class TestRequestPacer:
    """Tests for RequestPacer."""

    @pytest.mark.asyncio
    async def test_spaces_calls(self) -> None:
        pacer = RequestPacer(20)
        loop = asyncio.get_running_loop()
        started = loop.time()

        await asyncio.gather(*(pacer.wait() for _ in range(3)))

        assert loop.time() - started >= 0.09

    def test_rejects_non_positive_rate(self) -> None:
        with pytest.raises(ValueError):
            RequestPacer(0)
