"""Telegram Bot API client.

Uses raw HTTP POST via requests, no extra dependency needed.
"""
import json
import logging

from utils.errors import DeliveryError
from utils.http_client import HTTPClient

logger = logging.getLogger("opsmonitor.telegram")

TELEGRAM_API = "https://api.telegram.org/bot{token}"


class TelegramBot:
    """Thin wrapper around Telegram Bot API."""

    def __init__(self, bot_token: str, chat_id: str = "", timeout=30):
        self.bot_token = bot_token
        self.chat_id = str(chat_id or "")
        self.base_url = TELEGRAM_API.format(token=bot_token)
        self.client = HTTPClient(timeout=timeout, channel="telegram")

    def send_message(self, text: str, chat_id: str = None,
                     parse_mode: str = "Markdown") -> dict:
        """Send a text message. Raises DeliveryError unless Telegram reports ok."""
        if not self.bot_token:
            raise DeliveryError("Telegram bot token not configured", channel="telegram")
        payload = {
            "chat_id": chat_id or self.chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        body = self.client.post_json(f"{self.base_url}/sendMessage", payload)
        try:
            data = json.loads(body or "{}")
        except ValueError:
            data = {}
        if not data.get("ok"):
            raise DeliveryError(f"Telegram API error: {data.get('description', body)}",
                                channel="telegram", response_body=body)
        logger.debug("Telegram message sent to %s", payload["chat_id"])
        return data
