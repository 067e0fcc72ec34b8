"""Notification delivery channels."""

from nft_whale_tracker.alerter.channels.telegram import TelegramChannel
from nft_whale_tracker.alerter.channels.webhook import WebhookChannel

__all__ = ["TelegramChannel", "WebhookChannel"]
