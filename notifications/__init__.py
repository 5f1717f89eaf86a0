"""Notification delivery: dispatcher and transport clients."""
from notifications.dispatcher import NotificationDispatcher, compute_backoff
from notifications.email_sender import EmailSender
from notifications.telegram_bot import TelegramBot
