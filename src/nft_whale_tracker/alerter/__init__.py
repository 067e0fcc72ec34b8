"""Alert rules, evaluation and notification delivery."""

from nft_whale_tracker.alerter.dispatcher import DispatchResult, NotificationDispatcher
from nft_whale_tracker.alerter.engine import AlertRuleEngine, AlertRuleError
from nft_whale_tracker.alerter.formatter import AlertFormatter
from nft_whale_tracker.alerter.models import (
    AlertHistoryItem,
    AlertRule,
    AlertStats,
    Channel,
    Condition,
    FormattedAlert,
    MetricType,
    RuleStatus,
)
from nft_whale_tracker.alerter.store import AlertStore

__all__ = [
    "AlertFormatter",
    "AlertHistoryItem",
    "AlertRule",
    "AlertRuleEngine",
    "AlertRuleError",
    "AlertStats",
    "AlertStore",
    "Channel",
    "Condition",
    "DispatchResult",
    "FormattedAlert",
    "MetricType",
    "NotificationDispatcher",
    "RuleStatus",
]
