"""Data ingestion layer - ERC-721 transfer events from an Ethereum node."""

from nft_whale_tracker.ingestor.chain import ChainClient, ChainClientError, RateLimitError, RPCError
from nft_whale_tracker.ingestor.models import (
    EventKind,
    EventSourceError,
    MalformedEventError,
    TransferEvent,
)
from nft_whale_tracker.ingestor.source import EventSource, Web3TransferEventSource

__all__ = [
    "ChainClient",
    "ChainClientError",
    "EventKind",
    "EventSource",
    "EventSourceError",
    "MalformedEventError",
    "RPCError",
    "RateLimitError",
    "TransferEvent",
    "Web3TransferEventSource",
]
