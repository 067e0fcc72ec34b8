"""Alert message formatter for multi-channel delivery.

This module turns a fired AlertRule and its AlertHistoryItem into
human-readable messages for Telegram (HTML), plain-text channels and
a JSON webhook payload.
"""

from __future__ import annotations

import html
from decimal import Decimal
from typing import Any, Literal

from nft_whale_tracker.alerter.models import (
    AlertHistoryItem,
    AlertRule,
    Condition,
    FormattedAlert,
    MetricType,
)

METRIC_EMOJI: dict[MetricType, str] = {
    MetricType.PRICE: "💰",
    MetricType.WHALE: "🐋",
    MetricType.VOLUME: "📈",
    MetricType.LISTING: "🏷️",
}
DEFAULT_EMOJI = "🔔"


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate an Ethereum address to 0x1234...5678 format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


def format_number(value: float | Decimal) -> str:
    """Format a value with up to 4 decimals and no trailing zeros."""
    text = f"{value:.4f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def get_emoji(metric: MetricType) -> str:
    return METRIC_EMOJI.get(metric, DEFAULT_EMOJI)


def describe_condition(rule: AlertRule) -> str:
    """Condition and threshold as a phrase, e.g. 'below 4.5'."""
    threshold = format_number(rule.threshold)
    if rule.condition == Condition.PERCENT_CHANGE:
        return f"changed by at least {threshold}%"
    return f"{rule.condition.value} {threshold}"


def build_alert_message(rule: AlertRule, value: float | Decimal) -> str:
    """Human-readable message stored on the history item of a firing."""
    current = format_number(value)
    condition = describe_condition(rule)
    if rule.metric == MetricType.PRICE:
        return f"Floor price {condition} ETH (current: {current} ETH)"
    if rule.metric == MetricType.WHALE:
        return f"Whale activity detected: {current} NFTs {condition} threshold"
    if rule.metric == MetricType.VOLUME:
        return f"Trading volume {condition} ETH (current: {current} ETH)"
    if rule.metric == MetricType.LISTING:
        return f"New listing detected: {current} items"
    return f"Alert triggered for {rule.name}"


class AlertFormatter:
    """Formats alert firings into multi-channel messages.

    Supports two verbosity levels:
    - compact: Rule name and message only
    - detailed: Type, condition, current value, time and ids
    """

    def __init__(
        self,
        verbosity: Literal["compact", "detailed"] = "detailed",
    ) -> None:
        self.verbosity = verbosity

    def format(self, rule: AlertRule, item: AlertHistoryItem) -> FormattedAlert:
        """Format a firing into every channel representation.

        Args:
            rule: The rule that fired.
            item: The history record of the firing.

        Returns:
            FormattedAlert with all channel formats.
        """
        emoji = get_emoji(rule.metric)
        title = f"{emoji} Alert Triggered: {rule.name}"
        body = self._build_body(rule, item)

        return FormattedAlert(
            title=title,
            body=body,
            telegram_html=self._build_telegram_html(rule, item, emoji),
            plain_text=self._build_plain_text(rule, item),
            webhook_payload=self._build_webhook_payload(rule, item),
        )

    def _build_body(self, rule: AlertRule, item: AlertHistoryItem) -> str:
        if self.verbosity == "compact":
            return item.message

        lines = [
            f"Type: {rule.metric.value.capitalize()}",
            f"Condition: {describe_condition(rule)}",
            f"Current Value: {format_number(item.value)}",
            f"Message: {item.message}",
        ]
        return "\n".join(lines)

    def _build_telegram_html(self, rule: AlertRule, item: AlertHistoryItem, emoji: str) -> str:
        """Build Telegram HTML (parse_mode=HTML) text."""
        name = html.escape(rule.name)
        message = html.escape(item.message)

        if self.verbosity == "compact":
            return f"{emoji} <b>{name}</b>\n{message}"

        timestamp = item.triggered_at.strftime("%b %d, %Y %H:%M")
        lines = [
            f"{emoji} <b>Alert Triggered: {name}</b>",
            "",
            f"📋 <b>Type:</b> {rule.metric.value.capitalize()}",
            f"⚖️ <b>Condition:</b> {html.escape(describe_condition(rule).capitalize())}",
            f"📊 <b>Current Value:</b> {format_number(item.value)}",
            f"💬 <b>Message:</b> {message}",
            f"🕐 <b>Time:</b> {timestamp} UTC",
            "",
            f"<i>Alert ID: {html.escape(rule.id)}</i>",
        ]
        return "\n".join(lines)

    def _build_plain_text(self, rule: AlertRule, item: AlertHistoryItem) -> str:
        """Build plain text format for generic channels."""
        lines = [
            f"ALERT TRIGGERED: {rule.name}",
            "=" * 30,
            "",
            item.message,
        ]
        if self.verbosity == "detailed":
            lines.extend(
                [
                    "",
                    f"Type: {rule.metric.value}",
                    f"Condition: {describe_condition(rule)}",
                    f"Current Value: {format_number(item.value)}",
                    f"Time: {item.triggered_at.isoformat()}",
                    f"Rule ID: {rule.id}",
                ]
            )
        return "\n".join(lines)

    def _build_webhook_payload(self, rule: AlertRule, item: AlertHistoryItem) -> dict[str, Any]:
        return {
            "alert": {
                "ruleId": rule.id,
                "ruleName": rule.name,
                "type": rule.metric.value,
                "condition": rule.condition.value,
                "threshold": rule.threshold,
                "currentValue": item.value,
                "message": item.message,
                "triggeredAt": item.triggered_at.isoformat(),
            }
        }
