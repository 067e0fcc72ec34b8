"""Analytics layer - Distribution and windowed trading metrics."""

from nft_whale_tracker.analytics.metrics import (
    WHALE_THRESHOLD,
    HolderDistribution,
    HolderStats,
    TopTransaction,
    TradingMetrics,
    VolumePeriod,
    WhaleActivity,
    calculate_distribution,
    calculate_trading_metrics,
    detect_whale_activity,
    events_in_window,
    holder_stats,
    identify_large_transactions,
    top_holders,
    volume_trend,
    whale_addresses,
)

__all__ = [
    "WHALE_THRESHOLD",
    "HolderDistribution",
    "HolderStats",
    "TopTransaction",
    "TradingMetrics",
    "VolumePeriod",
    "WhaleActivity",
    "calculate_distribution",
    "calculate_trading_metrics",
    "detect_whale_activity",
    "events_in_window",
    "holder_stats",
    "identify_large_transactions",
    "top_holders",
    "volume_trend",
    "whale_addresses",
]
