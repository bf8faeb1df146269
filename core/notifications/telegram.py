"""Telegram bot client for operator alerts."""

from __future__ import annotations

import logging
import os
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramClient:
    """Telegram bot client for sending operator alerts (python-telegram-bot)."""

    def __init__(self, bot_token: Optional[str] = None, default_chat_id: Optional[str] = None):
        """Initialize Telegram client.

        Args:
            bot_token: Telegram bot token. If not provided, reads from TELEGRAM_BOT_TOKEN env var.
            default_chat_id: Default chat ID. If not provided, reads from TELEGRAM_CHAT_ID env var.
        """
        self.bot_token = bot_token or os.environ.get("TELEGRAM_BOT_TOKEN")
        self.default_chat_id = default_chat_id or os.environ.get("TELEGRAM_CHAT_ID")

        if not self.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not configured")

    async def send_message(self, text: str, chat_id: Optional[str] = None, parse_mode: Optional[str] = None) -> bool:
        """Send a message. Returns False (and logs) instead of raising on delivery failure."""
        if not self.bot_token:
            logger.error("Cannot send Telegram message: bot token not configured")
            return False

        target_chat_id = chat_id or self.default_chat_id
        if not target_chat_id:
            logger.error("Cannot send Telegram message: chat ID not provided")
            return False

        try:
            bot = Bot(token=self.bot_token)
            await bot.send_message(chat_id=target_chat_id, text=text, parse_mode=parse_mode)
            logger.info("Telegram message sent to chat %s", target_chat_id)
            return True
        except TelegramError as exc:
            logger.error("Failed to send Telegram message: %s", exc)
            return False

    async def send_alert(self, title: str, message: str, chat_id: Optional[str] = None) -> bool:
        # Plain text: tx hashes and error strings contain Markdown metacharacters.
        return await self.send_message(f"{title}\n\n{message}", chat_id=chat_id)
