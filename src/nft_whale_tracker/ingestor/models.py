"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"

# Destinations that take a token out of circulation.
BURN_ADDRESSES = frozenset({ZERO_ADDRESS, DEAD_ADDRESS})


class EventSourceError(Exception):
    """Base exception for event source failures.

    Transient by nature: the monitor abandons the tick and retries the same
    block range on the next one.
    """


class MalformedEventError(ValueError):
    """Raised when a raw transfer record cannot be turned into a TransferEvent."""


class EventKind(str, Enum):
    """Kind of ownership change."""

    MINT = "mint"
    SALE = "sale"
    TRANSFER = "transfer"


def is_burn_address(address: str) -> bool:
    return address.lower() in BURN_ADDRESSES


@dataclass(frozen=True)
class TransferEvent:
    """One observed on-chain ownership change of a collection token.

    Events are immutable once observed. They order by (block_number, log_index),
    which preserves on-chain log order within a block.
    """

    tx_hash: str
    block_number: int
    log_index: int
    timestamp: datetime
    from_address: str
    to_address: str
    token_id: int
    kind: EventKind = EventKind.TRANSFER
    price_eth: Decimal | None = None
    marketplace: str | None = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def is_mint(self) -> bool:
        return self.kind == EventKind.MINT or is_burn_address(self.from_address)

    @property
    def is_burn(self) -> bool:
        return is_burn_address(self.to_address)

    @property
    def is_sale(self) -> bool:
        return self.kind == EventKind.SALE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferEvent:
        """Create a TransferEvent from a loosely-typed record.

        Raises:
            MalformedEventError: If addresses are missing or the token id,
                block number or price are not numeric.
        """
        from_address = str(data.get("from") or data.get("from_address") or "").lower()
        to_address = str(data.get("to") or data.get("to_address") or "").lower()
        if not from_address or not to_address:
            raise MalformedEventError("transfer record is missing an address")

        try:
            token_id = int(str(data.get("token_id", data.get("tokenId"))), 0)
            block_number = int(data.get("block_number", data.get("blockNumber")))
            log_index = int(data.get("log_index", data.get("logIndex", 0)) or 0)
        except (TypeError, ValueError) as e:
            raise MalformedEventError(f"non-numeric field in transfer record: {e}") from e

        raw_ts = data.get("timestamp")
        if isinstance(raw_ts, datetime):
            timestamp = raw_ts if raw_ts.tzinfo else raw_ts.replace(tzinfo=UTC)
        elif isinstance(raw_ts, (int, float)):
            timestamp = datetime.fromtimestamp(raw_ts, tz=UTC)
        elif isinstance(raw_ts, str):
            try:
                timestamp = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
            except ValueError as e:
                raise MalformedEventError(f"invalid timestamp: {raw_ts}") from e
        else:
            raise MalformedEventError("transfer record is missing a timestamp")

        price: Decimal | None = None
        raw_price = data.get("price_eth", data.get("priceETH"))
        if raw_price is not None:
            try:
                price = Decimal(str(raw_price))
            except InvalidOperation as e:
                raise MalformedEventError(f"invalid price: {raw_price}") from e

        raw_kind = data.get("kind", data.get("type"))
        try:
            kind = EventKind(str(raw_kind)) if raw_kind else _infer_kind(from_address, price)
        except ValueError as e:
            raise MalformedEventError(f"unknown event kind: {raw_kind}") from e

        return cls(
            tx_hash=str(data.get("tx_hash") or data.get("txHash") or data.get("transactionHash") or ""),
            block_number=block_number,
            log_index=log_index,
            timestamp=timestamp,
            from_address=from_address,
            to_address=to_address,
            token_id=token_id,
            kind=kind,
            price_eth=price,
            marketplace=data.get("marketplace"),
        )

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "timestamp": self.timestamp.isoformat(),
            "from": self.from_address,
            "to": self.to_address,
            "token_id": self.token_id,
            "kind": self.kind.value,
            "price_eth": str(self.price_eth) if self.price_eth is not None else None,
            "marketplace": self.marketplace,
        }


def _infer_kind(from_address: str, price: Decimal | None) -> EventKind:
    if is_burn_address(from_address):
        return EventKind.MINT
    if price is not None and price > 0:
        return EventKind.SALE
    return EventKind.TRANSFER
