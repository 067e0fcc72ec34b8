"""NFT Whale Tracker - holder state and alerting for a fixed-supply NFT collection."""

__version__ = "0.1.0"
