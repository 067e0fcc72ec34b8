"""Derived analytics over holder state and transfer events.

Every function here is pure: no I/O, no wall-clock reads, and empty input
yields zeroed results rather than errors. Monetary outputs are rounded to
4 decimal places only at the end; sums are carried in full Decimal
precision.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from nft_whale_tracker.ingestor.models import TransferEvent
from nft_whale_tracker.ledger.models import Holder

WHALE_THRESHOLD = 20
DEFAULT_LARGE_TRANSACTION_ETH = Decimal("10")

_PRICE_QUANT = Decimal("0.0001")
_AVERAGE_QUANT = Decimal("0.01")


def round_price(value: Decimal) -> Decimal:
    """Round a monetary value to the 4-decimal presentation precision."""
    return value.quantize(_PRICE_QUANT, rounding=ROUND_HALF_UP)


def _active(holders: Iterable[Holder]) -> list[Holder]:
    return [h for h in holders if h.count > 0]


# === Distribution ===


@dataclass(frozen=True)
class HolderDistribution:
    """Active holders partitioned into five fixed tiers by token count."""

    single: int = 0  # 1
    small: int = 0  # 2-5
    medium: int = 0  # 6-10
    large: int = 0  # 11-19
    whales: int = 0  # 20+

    @property
    def total(self) -> int:
        return self.single + self.small + self.medium + self.large + self.whales

    def to_dict(self) -> dict[str, int]:
        return {
            "single": self.single,
            "small": self.small,
            "medium": self.medium,
            "large": self.large,
            "whales": self.whales,
        }


def tier_for(count: int) -> Literal["single", "small", "medium", "large", "whales"]:
    """Return the distribution tier name for a positive token count."""
    if count <= 1:
        return "single"
    if count <= 5:
        return "small"
    if count <= 10:
        return "medium"
    if count <= 19:
        return "large"
    return "whales"


def calculate_distribution(holders: Iterable[Holder]) -> HolderDistribution:
    tiers: Counter[str] = Counter(tier_for(h.count) for h in _active(holders))
    return HolderDistribution(
        single=tiers["single"],
        small=tiers["small"],
        medium=tiers["medium"],
        large=tiers["large"],
        whales=tiers["whales"],
    )


@dataclass(frozen=True)
class HolderStats:
    total_holders: int
    total_supply: int
    average_per_holder: Decimal
    distribution: HolderDistribution

    def to_dict(self) -> dict[str, object]:
        return {
            "total_holders": self.total_holders,
            "total_supply": self.total_supply,
            "average_per_holder": str(self.average_per_holder),
            "distribution": self.distribution.to_dict(),
        }


def holder_stats(holders: Iterable[Holder]) -> HolderStats:
    active = _active(holders)
    supply = sum(h.count for h in active)
    average = Decimal(0)
    if active:
        average = (Decimal(supply) / Decimal(len(active))).quantize(
            _AVERAGE_QUANT, rounding=ROUND_HALF_UP
        )
    return HolderStats(
        total_holders=len(active),
        total_supply=supply,
        average_per_holder=average,
        distribution=calculate_distribution(active),
    )


def top_holders(holders: Iterable[Holder], limit: int = 50) -> list[Holder]:
    """Largest active holders, ties broken by address for a stable order."""
    ranked = sorted(_active(holders), key=lambda h: (-h.count, h.address))
    return ranked[:limit]


def whale_addresses(holders: Iterable[Holder], threshold: int = WHALE_THRESHOLD) -> frozenset[str]:
    return frozenset(h.address for h in holders if h.count >= threshold)


# === Trading metrics ===


@dataclass(frozen=True)
class TopTransaction:
    token_id: int
    price_eth: Decimal
    tx_hash: str


@dataclass(frozen=True)
class TradingMetrics:
    """Windowed trading metrics.

    Price fields are None when the window holds no priced events.
    Buyers and sellers are taken from sale events only.
    """

    transaction_count: int = 0
    volume: Decimal = Decimal("0.0000")
    avg_price: Decimal | None = None
    median_price: Decimal | None = None
    floor_price: Decimal | None = None
    buyers: frozenset[str] = field(default_factory=frozenset)
    sellers: frozenset[str] = field(default_factory=frozenset)
    top_transaction: TopTransaction | None = None

    @property
    def unique_buyers(self) -> int:
        return len(self.buyers)

    @property
    def unique_sellers(self) -> int:
        return len(self.sellers)

    def to_dict(self) -> dict[str, object]:
        def _s(value: Decimal | None) -> str | None:
            return str(value) if value is not None else None

        top = None
        if self.top_transaction is not None:
            top = {
                "token_id": self.top_transaction.token_id,
                "price_eth": str(self.top_transaction.price_eth),
                "tx_hash": self.top_transaction.tx_hash,
            }
        return {
            "transaction_count": self.transaction_count,
            "volume": str(self.volume),
            "avg_price": _s(self.avg_price),
            "median_price": _s(self.median_price),
            "floor_price": _s(self.floor_price),
            "unique_buyers": self.unique_buyers,
            "unique_sellers": self.unique_sellers,
            "top_transaction": top,
        }


def events_in_window(
    events: Iterable[TransferEvent],
    start: datetime,
    end: datetime,
) -> list[TransferEvent]:
    """Events with start <= timestamp <= end."""
    return [e for e in events if start <= e.timestamp <= end]


def _median(sorted_prices: Sequence[Decimal]) -> Decimal:
    mid = len(sorted_prices) // 2
    if len(sorted_prices) % 2:
        return sorted_prices[mid]
    return (sorted_prices[mid - 1] + sorted_prices[mid]) / 2


def calculate_trading_metrics(
    events: Iterable[TransferEvent],
    start: datetime | None = None,
    end: datetime | None = None,
) -> TradingMetrics:
    """Compute trading metrics, optionally restricted to [start, end]."""
    relevant = list(events)
    if start is not None and end is not None:
        relevant = events_in_window(relevant, start, end)
    if not relevant:
        return TradingMetrics()

    priced = [e for e in relevant if e.price_eth is not None and e.price_eth > 0]
    prices = sorted(e.price_eth for e in priced if e.price_eth is not None)
    volume = sum(prices, Decimal(0))

    avg_price = median_price = floor_price = None
    top = None
    if prices:
        avg_price = round_price(volume / len(prices))
        median_price = round_price(_median(prices))
        floor_price = round_price(prices[0])
        best = max(priced, key=lambda e: e.price_eth or Decimal(0))
        top = TopTransaction(
            token_id=best.token_id,
            price_eth=round_price(best.price_eth or Decimal(0)),
            tx_hash=best.tx_hash,
        )

    sales = [e for e in relevant if e.is_sale]
    return TradingMetrics(
        transaction_count=len(relevant),
        volume=round_price(volume),
        avg_price=avg_price,
        median_price=median_price,
        floor_price=floor_price,
        buyers=frozenset(e.to_address for e in sales),
        sellers=frozenset(e.from_address for e in sales),
        top_transaction=top,
    )


# === Whale activity ===


@dataclass(frozen=True)
class WhaleActivity:
    address: str
    action: Literal["buy", "sell"]
    token_id: int
    total_tokens: int
    timestamp: datetime
    tx_hash: str


def detect_whale_activity(
    holders: Iterable[Holder],
    events: Iterable[TransferEvent],
    min_tokens: int = WHALE_THRESHOLD,
) -> list[WhaleActivity]:
    """One entry per event whose sender or recipient is a whale.

    A whale receiving a token is recorded as a buy, otherwise a sell.
    """
    whales = {h.address: h for h in holders if h.count >= min_tokens}
    activity: list[WhaleActivity] = []
    for event in events:
        if event.to_address in whales:
            whale, action = whales[event.to_address], "buy"
        elif event.from_address in whales:
            whale, action = whales[event.from_address], "sell"
        else:
            continue
        activity.append(
            WhaleActivity(
                address=whale.address,
                action=action,  # type: ignore[arg-type]
                token_id=event.token_id,
                total_tokens=whale.count,
                timestamp=event.timestamp,
                tx_hash=event.tx_hash,
            )
        )
    return activity


def identify_large_transactions(
    events: Iterable[TransferEvent],
    min_price: Decimal = DEFAULT_LARGE_TRANSACTION_ETH,
) -> list[TransferEvent]:
    return [e for e in events if e.price_eth is not None and e.price_eth >= min_price]


@dataclass(frozen=True)
class VolumePeriod:
    period_start: datetime
    volume: Decimal
    count: int


def volume_trend(
    events: Sequence[TransferEvent],
    *,
    as_of: datetime,
    interval: timedelta = timedelta(hours=24),
    periods: int = 7,
) -> list[VolumePeriod]:
    """Per-period volume and event count, oldest period first.

    Periods are half-open [start, end) and end at `as_of`.
    """
    trend: list[VolumePeriod] = []
    for i in range(periods - 1, -1, -1):
        period_start = as_of - interval * (i + 1)
        period_end = as_of - interval * i
        in_period = [e for e in events if period_start <= e.timestamp < period_end]
        volume = sum((e.price_eth for e in in_period if e.price_eth is not None), Decimal(0))
        trend.append(
            VolumePeriod(period_start=period_start, volume=round_price(volume), count=len(in_period))
        )
    return trend
