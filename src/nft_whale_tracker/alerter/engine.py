"""Alert rule engine.

Holds the rule and history collections (through an AlertStore) and decides,
for each new observation, whether a rule fires. There is no built-in
debounce: a rule whose condition keeps holding fires on every evaluation.
Callers that want a re-arm window can compare `rule.last_triggered` before
evaluating.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

from nft_whale_tracker.alerter.formatter import build_alert_message
from nft_whale_tracker.alerter.models import (
    AlertHistoryItem,
    AlertRule,
    AlertStats,
    Channel,
    Condition,
    MetricType,
    RuleStatus,
)
from nft_whale_tracker.alerter.store import AlertStore

logger = logging.getLogger(__name__)

EQUALS_EPSILON = 0.01
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_HISTORY_RETENTION = timedelta(days=30)


class AlertRuleError(ValueError):
    """Raised when a rule definition is invalid."""


class AlertNotifier(Protocol):
    """Receives firings. Delivery is best-effort; return values are ignored."""

    async def notify(self, rule: AlertRule, item: AlertHistoryItem) -> Any: ...


def percent_change(previous: float | None, current: float) -> Decimal | None:
    """Absolute relative change in percent, or None without a usable baseline.

    Computed on the decimal renderings of both values so that boundaries such
    as 3 -> 3.3 come out at exactly 10%.
    """
    if previous is None or previous == 0:
        return None
    before = Decimal(str(previous))
    return abs((Decimal(str(current)) - before) / before * 100)


def condition_met(rule: AlertRule, observed: float) -> bool:
    """Whether `observed` satisfies the rule, given the rule's stored last value."""
    if rule.condition == Condition.ABOVE:
        return observed > rule.threshold
    if rule.condition == Condition.BELOW:
        return observed < rule.threshold
    if rule.condition == Condition.EQUALS:
        return abs(observed - rule.threshold) < EQUALS_EPSILON
    if rule.condition == Condition.PERCENT_CHANGE:
        change = percent_change(rule.last_value, observed)
        return change is not None and change >= Decimal(str(rule.threshold))
    return False


def _coerce_enum(enum_cls: type, value: Any, field_name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise AlertRuleError(f"invalid {field_name}: {value!r}") from e


def _coerce_threshold(value: Any) -> float:
    try:
        threshold = float(value)
    except (TypeError, ValueError) as e:
        raise AlertRuleError(f"threshold must be numeric: {value!r}") from e
    if not math.isfinite(threshold):
        raise AlertRuleError("threshold must be finite")
    return threshold


def _coerce_channels(channels: Iterable[Any]) -> tuple[Channel, ...]:
    if isinstance(channels, str) or not isinstance(channels, Iterable):
        raise AlertRuleError(f"channels must be a list: {channels!r}")
    result: list[Channel] = []
    for channel in channels:
        coerced = _coerce_enum(Channel, channel, "channel")
        if coerced not in result:
            result.append(coerced)
    return tuple(result)


class AlertRuleEngine:
    """Evaluates alert rules and manages their lifecycle.

    Example:
        ```python
        engine = AlertRuleEngine(AlertStore(), notifier=dispatcher)
        rule = engine.create_rule(
            name="Floor below 4 ETH",
            metric="price",
            condition="below",
            threshold=4.0,
            channels=["telegram"],
        )
        fired = await engine.evaluate(rule, 3.9)
        ```
    """

    def __init__(
        self,
        store: AlertStore | None = None,
        *,
        notifier: AlertNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store if store is not None else AlertStore()
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(UTC))
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

    @property
    def store(self) -> AlertStore:
        return self._store

    # === Rule management ===

    def create_rule(
        self,
        *,
        name: str,
        metric: MetricType | str,
        condition: Condition | str,
        threshold: float | Decimal | str,
        channels: Iterable[Channel | str] = (),
    ) -> AlertRule:
        if not isinstance(name, str) or not name.strip():
            raise AlertRuleError("rule name must not be empty")
        rule = AlertRule(
            id=self._new_id(),
            name=name.strip(),
            metric=_coerce_enum(MetricType, metric, "metric"),
            condition=_coerce_enum(Condition, condition, "condition"),
            threshold=_coerce_threshold(threshold),
            channels=_coerce_channels(channels),
            created_at=self._clock(),
        )
        self._store.rules[rule.id] = rule
        logger.info("Created alert rule: %s (%s)", rule.name, rule.id)
        return rule

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._store.rules.get(rule_id)

    def list_rules(self) -> list[AlertRule]:
        """All rules, newest first."""
        return sorted(self._store.rules.values(), key=lambda r: r.created_at, reverse=True)

    def rules_for(self, metric: MetricType) -> list[AlertRule]:
        """Active rules watching `metric`, in creation order."""
        return [r for r in self._store.rules.values() if r.metric == metric and r.is_active]

    def update_rule(
        self,
        rule_id: str,
        *,
        name: str | None = None,
        condition: Condition | str | None = None,
        threshold: float | Decimal | str | None = None,
        status: RuleStatus | str | None = None,
        channels: Iterable[Channel | str] | None = None,
    ) -> AlertRule | None:
        rule = self._store.rules.get(rule_id)
        if rule is None:
            logger.warning("Alert rule not found: %s", rule_id)
            return None

        # Validate everything before touching the rule.
        new_name = rule.name
        if name is not None:
            if not isinstance(name, str) or not name.strip():
                raise AlertRuleError("rule name must not be empty")
            new_name = name.strip()
        new_condition = rule.condition if condition is None else _coerce_enum(Condition, condition, "condition")
        new_threshold = rule.threshold if threshold is None else _coerce_threshold(threshold)
        new_status = rule.status if status is None else _coerce_enum(RuleStatus, status, "status")
        new_channels = rule.channels if channels is None else _coerce_channels(channels)

        rule.name = new_name
        rule.condition = new_condition
        rule.threshold = new_threshold
        rule.status = new_status
        rule.channels = new_channels
        logger.info("Updated alert rule: %s", rule_id)
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        deleted = self._store.rules.pop(rule_id, None) is not None
        if deleted:
            logger.info("Deleted alert rule: %s", rule_id)
        return deleted

    def toggle_rule(self, rule_id: str) -> AlertRule | None:
        """Flip a rule between active and paused."""
        rule = self._store.rules.get(rule_id)
        if rule is None:
            return None
        new_status = RuleStatus.PAUSED if rule.is_active else RuleStatus.ACTIVE
        return self.update_rule(rule_id, status=new_status)

    # === Evaluation ===

    async def evaluate(self, rule: AlertRule, observed: float | Decimal) -> bool:
        """Evaluate one observation against a rule.

        Paused rules are skipped and keep their stored value. Otherwise the
        stored last value is replaced by `observed` whether or not the rule
        fires.

        Returns:
            True if the rule fired.
        """
        if not rule.is_active:
            return False

        value = float(observed)
        fired = condition_met(rule, value)
        item: AlertHistoryItem | None = None
        if fired:
            item = self._record_firing(rule, value)
        rule.last_value = value

        if item is not None:
            await self._notify(rule, item)
        return fired

    async def check(self, rule_id: str, observed: float | Decimal) -> bool:
        """Evaluate by rule id; unknown ids never fire."""
        rule = self._store.rules.get(rule_id)
        if rule is None:
            return False
        return await self.evaluate(rule, observed)

    async def evaluate_metric(self, metric: MetricType, observed: float | Decimal) -> list[AlertRule]:
        """Evaluate every active rule on `metric`. Returns the rules that fired."""
        fired: list[AlertRule] = []
        for rule in self.rules_for(metric):
            if await self.evaluate(rule, observed):
                fired.append(rule)
        return fired

    def _record_firing(self, rule: AlertRule, value: float) -> AlertHistoryItem:
        now = self._clock()
        rule.trigger_count += 1
        rule.last_triggered = now
        item = AlertHistoryItem(
            id=self._new_id(),
            rule_id=rule.id,
            rule_name=rule.name,
            metric=rule.metric,
            message=build_alert_message(rule, value),
            value=value,
            threshold=rule.threshold,
            triggered_at=now,
        )
        self._store.history.append(item)
        logger.info("Alert triggered: %s (value: %s)", rule.name, value)
        return item

    async def _notify(self, rule: AlertRule, item: AlertHistoryItem) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(rule, item)
        except Exception as e:
            logger.error("Failed to send notifications for alert %s: %s", rule.name, e)

    # === History ===

    def get_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[AlertHistoryItem]:
        """Most recent firings first."""
        ordered = sorted(self._store.history, key=lambda h: h.triggered_at, reverse=True)
        return ordered[:limit]

    def acknowledge(self, history_id: str) -> bool:
        """Acknowledge a firing. Returns False if unknown or already acknowledged."""
        item = self._store.find_history(history_id)
        if item is None:
            return False
        return item.acknowledge()

    def clear_old_history(self, max_age: timedelta = DEFAULT_HISTORY_RETENTION) -> int:
        cutoff = self._clock() - max_age
        before = len(self._store.history)
        self._store.history[:] = [h for h in self._store.history if h.triggered_at >= cutoff]
        cleared = before - len(self._store.history)
        if cleared:
            logger.info("Cleared %d old alert history items", cleared)
        return cleared

    def get_stats(self) -> AlertStats:
        now = self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)
        rules = list(self._store.rules.values())
        return AlertStats(
            total_rules=len(rules),
            active_rules=sum(1 for r in rules if r.is_active),
            triggered_today=sum(1 for h in self._store.history if h.triggered_at >= day_start),
            triggered_this_week=sum(1 for h in self._store.history if h.triggered_at >= week_start),
        )
