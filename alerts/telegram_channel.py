"""Telegram notification channel, implements the NotificationChannel protocol."""
import logging

from models.enums import ChannelType

logger = logging.getLogger("opsmonitor.alerts.telegram")

_SUBJECT_EMOJI = {
    "[EMERGENCY]": "\U0001f6a8",
    "[CRITICAL]": "❗❗",
    "[WARNING]": "⚠️",
    "[INFO]": "ℹ️",
    "[RESOLVED]": "✅",
}


class TelegramChannel:
    """Send notifications via a Telegram bot.

    The recipient, when set, is the chat id; otherwise the bot's default chat.
    """

    name = ChannelType.TELEGRAM.value

    def __init__(self, bot):
        self.bot = bot
        self.timeout = bot.client.timeout

    def send(self, recipient, subject, content) -> None:
        emoji = next((e for prefix, e in _SUBJECT_EMOJI.items() if prefix in subject), "")
        text = f"{emoji} *{subject}*\n{content}".strip()
        self.bot.send_message(text, chat_id=recipient or None)
