"""Data models for alert rules, firings and formatted notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class MetricType(str, Enum):
    """Metric an alert rule watches."""

    PRICE = "price"
    WHALE = "whale"
    VOLUME = "volume"
    LISTING = "listing"


class Condition(str, Enum):
    """Comparison between the observed value and the rule threshold."""

    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"
    PERCENT_CHANGE = "percent-change"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class Channel(str, Enum):
    """Notification channels a rule may deliver to."""

    TELEGRAM = "telegram"
    EMAIL = "email"
    WEBHOOK = "webhook"
    PUSH = "push"


@dataclass
class AlertRule:
    """A user-defined threshold condition on one metric.

    Attributes:
        id: Rule identifier.
        name: Display name.
        metric: Metric the rule observes.
        condition: Comparison operator.
        threshold: Numeric threshold (a percentage for percent-change rules).
        channels: Channels notified when the rule fires.
        status: Paused rules are skipped by evaluation.
        last_value: Value seen on the previous evaluation, if any.
        trigger_count: How many times the rule has fired.
        last_triggered: When the rule last fired.
        created_at: Creation time.
    """

    id: str
    name: str
    metric: MetricType
    condition: Condition
    threshold: float
    channels: tuple[Channel, ...] = ()
    status: RuleStatus = RuleStatus.ACTIVE
    last_value: float | None = None
    trigger_count: int = 0
    last_triggered: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "metric": self.metric.value,
            "condition": self.condition.value,
            "threshold": self.threshold,
            "channels": [c.value for c in self.channels],
            "status": self.status.value,
            "last_value": self.last_value,
            "trigger_count": self.trigger_count,
            "last_triggered": self.last_triggered.isoformat() if self.last_triggered else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AlertHistoryItem:
    """Record of one rule firing.

    Append-only; `acknowledged` is the only field that ever changes, and it
    changes at most once.
    """

    id: str
    rule_id: str
    rule_name: str
    metric: MetricType
    message: str
    value: float
    threshold: float
    triggered_at: datetime
    acknowledged: bool = False

    def acknowledge(self) -> bool:
        """Mark as acknowledged. Returns False if it already was."""
        if self.acknowledged:
            return False
        self.acknowledged = True
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "metric": self.metric.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "triggered_at": self.triggered_at.isoformat(),
            "acknowledged": self.acknowledged,
        }


@dataclass(frozen=True)
class AlertStats:
    total_rules: int
    active_rules: int
    triggered_today: int
    triggered_this_week: int


@dataclass(frozen=True)
class FormattedAlert:
    """An alert rendered for every delivery channel."""

    title: str
    body: str
    telegram_html: str
    plain_text: str
    webhook_payload: dict[str, Any]
