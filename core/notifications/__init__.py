"""Operator notifications."""

from core.notifications.discord import DiscordClient
from core.notifications.dispatcher import NotificationConfig, NotificationDispatcher
from core.notifications.telegram import TelegramClient

__all__ = [
    "TelegramClient",
    "DiscordClient",
    "NotificationDispatcher",
    "NotificationConfig",
]
