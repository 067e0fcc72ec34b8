"""Owned state for the alert rule engine."""

from __future__ import annotations

from dataclasses import dataclass, field

from nft_whale_tracker.alerter.models import AlertHistoryItem, AlertRule


@dataclass
class AlertStore:
    """Rule and history collections.

    Created by the application and handed to the AlertRuleEngine, which is
    the only writer. History is kept in firing order (oldest first).
    """

    rules: dict[str, AlertRule] = field(default_factory=dict)
    history: list[AlertHistoryItem] = field(default_factory=list)

    def find_history(self, history_id: str) -> AlertHistoryItem | None:
        for item in self.history:
            if item.id == history_id:
                return item
        return None
