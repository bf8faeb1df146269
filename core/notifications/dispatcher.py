"""Notification dispatcher for routing operator alerts to multiple channels."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Literal, Optional

from core.notifications.discord import DiscordClient
from core.notifications.telegram import TelegramClient

logger = logging.getLogger(__name__)


@dataclass
class NotificationConfig:
    """Configuration for notification channels."""

    telegram_enabled: bool = False
    discord_enabled: bool = False
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        """Enable each channel whose credentials are present."""
        return cls(
            telegram_enabled=bool(os.environ.get("TELEGRAM_BOT_TOKEN") and os.environ.get("TELEGRAM_CHAT_ID")),
            discord_enabled=bool(os.environ.get("DISCORD_WEBHOOK_URL")),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
        )


Channel = Literal["telegram", "discord", "all"]
Severity = Literal["info", "warning", "error"]

SEVERITY_COLORS = {
    "info": "green",
    "warning": "yellow",
    "error": "red",
}


class NotificationDispatcher:
    """Dispatcher for routing alerts to multiple channels."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        *,
        telegram: Optional[TelegramClient] = None,
        discord: Optional[DiscordClient] = None,
    ):
        self.config = config or NotificationConfig()
        self.telegram = telegram or TelegramClient()
        self.discord = discord or DiscordClient()

    @property
    def has_channels(self) -> bool:
        return self.config.telegram_enabled or self.config.discord_enabled

    async def send_alert(
        self,
        title: str,
        message: str,
        channel: Channel = "all",
        severity: Severity = "info",
    ) -> dict[str, bool]:
        """Send alert to configured channels.

        Delivery failures are logged and reported per channel; they never raise.

        Returns:
            Dict mapping channel names to success status
        """
        results: dict[str, bool] = {}

        send_telegram = channel in ("telegram", "all") and self.config.telegram_enabled
        send_discord = channel in ("discord", "all") and self.config.discord_enabled

        if not (send_telegram or send_discord):
            logger.warning("No notification channel enabled; alert not delivered: title='%s'", title)
            return results

        if send_telegram:
            results["telegram"] = await self.telegram.send_alert(
                title=title, message=message, chat_id=self.config.telegram_chat_id
            )
            if not results["telegram"]:
                logger.warning("Telegram notification failed: title='%s'", title)

        if send_discord:
            results["discord"] = await self.discord.send_alert_async(
                title=title, message=message, color=SEVERITY_COLORS.get(severity, "yellow")
            )
            if not results["discord"]:
                logger.warning("Discord notification failed: title='%s'", title)

        return results
