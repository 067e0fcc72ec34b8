"""Transfer event source backed by ERC-721 `Transfer` logs.

`EventSource` is the narrow interface the monitor consumes. The concrete
`Web3TransferEventSource` fetches logs for a block range in chunks, with a
bounded number of requests in flight, and enriches each transfer with its
block timestamp and, for non-mint transfers, the ETH value of the
enclosing transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from web3 import AsyncWeb3

from nft_whale_tracker.ingestor.models import (
    ZERO_ADDRESS,
    EventKind,
    EventSourceError,
    MalformedEventError,
    TransferEvent,
)

if TYPE_CHECKING:
    from nft_whale_tracker.ingestor.chain import ChainClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ERC-721 Transfer(address indexed from, address indexed to, uint256 indexed tokenId)
TRANSFER_EVENT_SIGNATURE = AsyncWeb3.to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))
ERC721_TRANSFER_TOPIC_COUNT = 4

WEI_PER_ETH = Decimal(10**18)
DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 2000
DEFAULT_MAX_CONCURRENT_REQUESTS = 5
MAX_CACHED_BLOCK_TIMESTAMPS = 10_000

# Exchange contracts the sale transaction is sent to.
KNOWN_MARKETPLACES: dict[str, str] = {
    "0x00000000000000adc04c56bf30ac9d3c0aaf14dc": "opensea",
    "0x0000000000000068f116a894984e2db1123eb395": "opensea",
    "0x000000000000ad05ccc4f10045630fb830b95127": "blur",
}


class EventSource(Protocol):
    """Supplies ordered transfer events and the chain head height."""

    async def current_height(self) -> int: ...

    async def events_in_range(self, from_block: int, to_block: int) -> list[TransferEvent]:
        """Events in [from_block, to_block], ascending by (block, log index)."""
        ...


def _to_hex(value: Any) -> str:
    hexed = value.hex() if hasattr(value, "hex") else str(value)
    return hexed if hexed.startswith("0x") else "0x" + hexed


def _topic_to_address(topic: Any) -> str:
    hexed = _to_hex(topic)[2:]
    if len(hexed) != 64:
        raise MalformedEventError(f"address topic has {len(hexed)} hex digits")
    return ("0x" + hexed[-40:]).lower()


def _topic_to_int(topic: Any) -> int:
    try:
        return int(_to_hex(topic), 16)
    except ValueError as e:
        raise MalformedEventError(f"non-numeric token id topic: {topic!r}") from e


@dataclass(frozen=True)
class DecodedTransferLog:
    """Raw fields of one ERC-721 Transfer log, before enrichment."""

    tx_hash: str
    block_number: int
    log_index: int
    from_address: str
    to_address: str
    token_id: int


def decode_transfer_log(log: dict[str, Any]) -> DecodedTransferLog:
    """Decode one raw ERC-721 Transfer log.

    Raises:
        MalformedEventError: If the log is not a well-formed ERC-721 Transfer.
    """
    topics = log.get("topics") or []
    if len(topics) != ERC721_TRANSFER_TOPIC_COUNT:
        # ERC-20 Transfer logs carry the amount in data and only 3 topics.
        raise MalformedEventError(f"expected {ERC721_TRANSFER_TOPIC_COUNT} topics, got {len(topics)}")
    if _to_hex(topics[0]).lower() != TRANSFER_EVENT_SIGNATURE.lower():
        raise MalformedEventError("not a Transfer event")
    try:
        block_number = int(log["blockNumber"])
        log_index = int(log["logIndex"])
        tx_hash = _to_hex(log["transactionHash"]).lower()
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEventError(f"missing log position: {e}") from e

    return DecodedTransferLog(
        tx_hash=tx_hash,
        block_number=block_number,
        log_index=log_index,
        from_address=_topic_to_address(topics[1]),
        to_address=_topic_to_address(topics[2]),
        token_id=_topic_to_int(topics[3]),
    )


class Web3TransferEventSource:
    """Event source reading a single ERC-721 contract over JSON-RPC.

    Example:
        ```python
        source = Web3TransferEventSource(client, contract_address="0x60E4...")
        head = await source.current_height()
        events = await source.events_in_range(head - 100, head)
        ```
    """

    def __init__(
        self,
        chain_client: ChainClient,
        *,
        contract_address: str,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
    ) -> None:
        if logs_chunk_size_blocks < 1:
            raise ValueError("logs_chunk_size_blocks must be >= 1")
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be >= 1")
        self._chain = chain_client
        self._contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self._chunk = logs_chunk_size_blocks
        self._max_concurrent = max_concurrent_requests
        self._block_timestamps: dict[int, datetime] = {}

    @property
    def contract_address(self) -> str:
        return self._contract_address

    async def current_height(self) -> int:
        return await self._chain.get_block_number()

    async def events_in_range(self, from_block: int, to_block: int) -> list[TransferEvent]:
        """Fetch, decode and enrich all transfers in [from_block, to_block].

        Raises:
            EventSourceError: If any chunk or enrichment lookup fails. Nothing
                is returned for a partially fetched range.
        """
        if from_block < 0:
            raise ValueError("from_block must be >= 0")
        if to_block < from_block:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrent)
        chunks = [
            (start, min(to_block, start + self._chunk - 1))
            for start in range(from_block, to_block + 1, self._chunk)
        ]
        chunk_logs = await self._gather_bounded(
            semaphore,
            [lambda s=start, e=end: self._fetch_chunk(s, e) for start, end in chunks],
        )

        decoded: list[DecodedTransferLog] = []
        for logs in chunk_logs:
            for log in logs:
                try:
                    decoded.append(decode_transfer_log(log))
                except MalformedEventError as e:
                    logger.warning("Skipping undecodable transfer log: %s", e)
        if not decoded:
            return []

        decoded.sort(key=lambda d: (d.block_number, d.log_index))
        timestamps = await self._resolve_timestamps(semaphore, {d.block_number for d in decoded})
        transactions = await self._resolve_transactions(
            semaphore, {d.tx_hash for d in decoded if d.from_address != ZERO_ADDRESS}
        )

        events = [self._build_event(d, timestamps, transactions) for d in decoded]
        logger.debug(
            "Fetched %d transfers for blocks %d..%d in %d chunk(s)",
            len(events),
            from_block,
            to_block,
            len(chunks),
        )
        return events

    async def _gather_bounded(
        self,
        semaphore: asyncio.Semaphore,
        calls: list[Callable[[], Awaitable[T]]],
    ) -> list[T]:
        async def run(call: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                return await call()

        results = await asyncio.gather(*(run(c) for c in calls), return_exceptions=True)
        for result in results:
            if isinstance(result, EventSourceError):
                raise result
            if isinstance(result, BaseException):
                raise EventSourceError(f"event source request failed: {result}") from result
        return results  # type: ignore[return-value]

    async def _fetch_chunk(self, start: int, end: int) -> list[dict[str, Any]]:
        return await self._chain.get_logs(
            {
                "address": self._contract_address,
                "topics": [TRANSFER_EVENT_SIGNATURE],
                "fromBlock": start,
                "toBlock": end,
            }
        )

    async def _resolve_timestamps(
        self,
        semaphore: asyncio.Semaphore,
        block_numbers: set[int],
    ) -> dict[int, datetime]:
        resolved = {b: self._block_timestamps[b] for b in block_numbers if b in self._block_timestamps}
        missing = sorted(block_numbers - resolved.keys())
        if missing:
            blocks = await self._gather_bounded(
                semaphore,
                [lambda n=n: self._chain.get_block(n) for n in missing],
            )
            for number, block in zip(missing, blocks, strict=True):
                resolved[number] = datetime.fromtimestamp(int(block["timestamp"]), tz=UTC)
            if len(self._block_timestamps) + len(missing) > MAX_CACHED_BLOCK_TIMESTAMPS:
                self._block_timestamps.clear()
            self._block_timestamps.update((n, resolved[n]) for n in missing)
        return resolved

    async def _resolve_transactions(
        self,
        semaphore: asyncio.Semaphore,
        tx_hashes: set[str],
    ) -> dict[str, dict[str, Any]]:
        ordered = sorted(tx_hashes)
        txs = await self._gather_bounded(
            semaphore,
            [lambda h=h: self._chain.get_transaction(h) for h in ordered],
        )
        return dict(zip(ordered, txs, strict=True))

    def _build_event(
        self,
        decoded: DecodedTransferLog,
        timestamps: dict[int, datetime],
        transactions: dict[str, dict[str, Any]],
    ) -> TransferEvent:
        kind = EventKind.TRANSFER
        price: Decimal | None = None
        marketplace: str | None = None

        if decoded.from_address == ZERO_ADDRESS:
            kind = EventKind.MINT
        else:
            tx = transactions.get(decoded.tx_hash, {})
            value_wei = int(tx.get("value") or 0)
            if value_wei > 0:
                kind = EventKind.SALE
                price = Decimal(value_wei) / WEI_PER_ETH
                marketplace = KNOWN_MARKETPLACES.get(str(tx.get("to") or "").lower())

        return TransferEvent(
            tx_hash=decoded.tx_hash,
            block_number=decoded.block_number,
            log_index=decoded.log_index,
            timestamp=timestamps[decoded.block_number],
            from_address=decoded.from_address,
            to_address=decoded.to_address,
            token_id=decoded.token_id,
            kind=kind,
            price_eth=price,
            marketplace=marketplace,
        )
