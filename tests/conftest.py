"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from nft_whale_tracker.ingestor.models import ZERO_ADDRESS, EventKind, TransferEvent

ADDR1 = "0x" + "1" * 40
ADDR2 = "0x" + "2" * 40
ADDR3 = "0x" + "3" * 40

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def t0() -> datetime:
    """Fixed reference time for event timestamps."""
    return T0


@pytest.fixture
def make_event() -> Callable[..., TransferEvent]:
    """Factory for TransferEvents with sensible defaults.

    Block numbers and log indexes increase with each call unless given.
    """
    counter = {"n": 0}

    def _make(
        token_id: int,
        from_address: str,
        to_address: str,
        *,
        block: int | None = None,
        log_index: int = 0,
        ts: datetime | None = None,
        price: str | None = None,
        kind: EventKind | None = None,
    ) -> TransferEvent:
        counter["n"] += 1
        n = counter["n"]
        price_eth = Decimal(price) if price is not None else None
        if kind is None:
            if from_address == ZERO_ADDRESS:
                kind = EventKind.MINT
            elif price_eth is not None:
                kind = EventKind.SALE
            else:
                kind = EventKind.TRANSFER
        return TransferEvent(
            tx_hash="0x" + f"{n:064x}",
            block_number=block if block is not None else 100 + n,
            log_index=log_index,
            timestamp=ts or T0 + timedelta(minutes=n),
            from_address=from_address,
            to_address=to_address,
            token_id=token_id,
            kind=kind,
            price_eth=price_eth,
        )

    return _make
