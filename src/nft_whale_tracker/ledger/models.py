"""Holder state reconstructed from the transfer log."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Holder:
    """Aggregate ownership state for one address.

    Attributes:
        address: Lower-cased wallet address.
        token_ids: Token identifiers currently owned.
        first_seen: Timestamp of the event that first credited this address.
        last_activity: Timestamp of the latest event touching this address.
        percentage_of_supply: Share of the active supply held, in percent.
    """

    address: str
    token_ids: set[int] = field(default_factory=set)
    first_seen: datetime | None = None
    last_activity: datetime | None = None
    percentage_of_supply: float = 0.0

    @property
    def count(self) -> int:
        return len(self.token_ids)

    @property
    def is_active(self) -> bool:
        return bool(self.token_ids)

    def copy(self) -> Holder:
        return Holder(
            address=self.address,
            token_ids=set(self.token_ids),
            first_seen=self.first_seen,
            last_activity=self.last_activity,
            percentage_of_supply=self.percentage_of_supply,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "token_ids": sorted(self.token_ids),
            "count": self.count,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "percentage_of_supply": self.percentage_of_supply,
        }


@dataclass
class HolderMap:
    """Every address ever credited with a token, plus a token ownership index.

    Inactive holders (count 0) are kept so that first-seen history survives;
    views such as `active_holders()` exclude them. `token_owners` maps each
    outstanding token to its single current owner and `burned` holds tokens
    sent to a burn address.
    """

    holders: dict[str, Holder] = field(default_factory=dict)
    token_owners: dict[int, str] = field(default_factory=dict)
    burned: set[int] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.holders)

    def __iter__(self) -> Iterator[Holder]:
        return iter(self.holders.values())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self.holders

    def get(self, address: str) -> Holder | None:
        return self.holders.get(address.lower())

    def owner_of(self, token_id: int) -> str | None:
        return self.token_owners.get(token_id)

    def active_holders(self) -> list[Holder]:
        return [h for h in self.holders.values() if h.is_active]

    @property
    def total_supply(self) -> int:
        """Outstanding, non-burned tokens held by active holders."""
        return sum(h.count for h in self.holders.values())

    def copy(self) -> HolderMap:
        """Deep copy so callers can replay without touching the original."""
        return HolderMap(
            holders={address: holder.copy() for address, holder in self.holders.items()},
            token_owners=dict(self.token_owners),
            burned=set(self.burned),
        )
