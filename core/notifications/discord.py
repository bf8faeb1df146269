"""Discord webhook client for operator alerts."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx
import requests

logger = logging.getLogger(__name__)

COLOR_MAP = {
    "green": 0x00FF00,
    "yellow": 0xFFFF00,
    "red": 0xFF0000,
}


def _embed_payload(title: str, message: str, color: str) -> dict[str, Any]:
    # Discord caps embed titles at 256 and descriptions at 4096 characters.
    return {
        "embeds": [
            {
                "title": title[:256],
                "description": message[:4096],
                "color": COLOR_MAP.get(color, COLOR_MAP["yellow"]),
            }
        ]
    }


class DiscordClient:
    """Discord webhook client."""

    def __init__(self, webhook_url: Optional[str] = None):
        """Initialize Discord client.

        Args:
            webhook_url: Discord webhook URL. If not provided, reads from DISCORD_WEBHOOK_URL env var.
        """
        self.webhook_url = webhook_url or os.environ.get("DISCORD_WEBHOOK_URL")
        self._client: Optional[httpx.AsyncClient] = None

        if not self.webhook_url:
            logger.warning("DISCORD_WEBHOOK_URL not configured")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    def send_alert(self, title: str, message: str, color: str = "yellow") -> bool:
        """Send an embed alert (blocking; for scripts).

        Returns:
            True if alert sent successfully
        """
        if not self.webhook_url:
            logger.error("Cannot send Discord alert: webhook URL not configured")
            return False

        try:
            response = requests.post(self.webhook_url, json=_embed_payload(title, message, color), timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send Discord alert: %s", exc)
            return False

        logger.info("Discord alert sent successfully")
        return True

    async def send_alert_async(self, title: str, message: str, color: str = "yellow") -> bool:
        """Send an embed alert without blocking the event loop."""
        if not self.webhook_url:
            logger.error("Cannot send Discord alert: webhook URL not configured")
            return False

        try:
            client = await self._get_client()
            response = await client.post(self.webhook_url, json=_embed_payload(title, message, color))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send Discord alert: %s", exc)
            return False

        logger.info("Discord alert sent successfully")
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
