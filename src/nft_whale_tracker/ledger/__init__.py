"""Ledger layer - Holder state reconstructed by replaying transfer events."""

from nft_whale_tracker.ledger.models import Holder, HolderMap
from nft_whale_tracker.ledger.replay import ReplayResult, replay

__all__ = [
    "Holder",
    "HolderMap",
    "ReplayResult",
    "replay",
]
