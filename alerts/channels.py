"""Notification channel senders.

Each sender makes one delivery attempt per call and raises on failure;
retries are tracked by the dispatcher per notification record.
"""
import base64
import hashlib
import hmac
import json
import os
import time
import logging
import threading
from typing import Protocol, runtime_checkable

from rich.console import Console

from models.enums import ChannelType
from utils.clock import utcnow, to_iso
from utils.errors import DeliveryError
from utils.http_client import HTTPClient

logger = logging.getLogger("opsmonitor.alerts.channels")


@runtime_checkable
class NotificationChannel(Protocol):
    name: str
    timeout: float

    def send(self, recipient: str, subject: str, content: str) -> None: ...


class ConsoleChannel:
    """Print notifications to the terminal with rich formatting."""

    name = ChannelType.CONSOLE.value

    def __init__(self, console=None, timeout=1):
        self.console = console or Console()
        self.timeout = timeout

    def send(self, recipient, subject, content):
        if subject.startswith("[RESOLVED]"):
            style = "bold green"
        elif subject.startswith(("[CRITICAL]", "[EMERGENCY]")) or "[ESCALATED" in subject:
            style = "bold white on red"
        elif subject.startswith("[WARNING]"):
            style = "bold yellow"
        else:
            style = "bold blue"
        self.console.print(f"[{style}]{subject}[/]")
        self.console.print(content, markup=False, highlight=False)


class FileChannel:
    """Append notifications to a JSON lines log file."""

    name = ChannelType.FILE.value

    def __init__(self, log_path="data/notifications.jsonl", timeout=5):
        self.log_path = log_path
        self.timeout = timeout
        self._lock = threading.Lock()

    def send(self, recipient, subject, content):
        entry = {
            "timestamp": to_iso(utcnow()),
            "recipient": recipient,
            "subject": subject,
            "content": content,
        }
        try:
            directory = os.path.dirname(self.log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with self._lock, open(self.log_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            raise DeliveryError(f"Failed to write {self.log_path}: {e}", channel=self.name) from e


class EmailChannel:
    """Email channel backed by the SMTP sender."""

    name = ChannelType.EMAIL.value

    def __init__(self, sender):
        self.sender = sender
        self.timeout = sender.timeout

    def send(self, recipient, subject, content):
        self.sender.send_message(recipient, subject, content)


class WebhookChannel:
    """POST (or the configured method) a JSON document to an HTTP endpoint."""

    name = ChannelType.WEBHOOK.value

    def __init__(self, url, method="POST", headers=None, timeout=10):
        self.url = url
        self.method = method.upper()
        self.timeout = timeout
        self.client = HTTPClient(timeout=timeout, headers=headers, channel=self.name)

    def send(self, recipient, subject, content):
        payload = {
            "subject": subject,
            "content": content,
            "recipient": recipient,
            "timestamp": int(time.time()),
        }
        self.client.post_json(self.url, payload, method=self.method)


class SlackChannel:
    """Slack incoming webhook. The recipient, when set, overrides the channel."""

    name = ChannelType.SLACK.value

    def __init__(self, webhook_url, username="Ops Monitor", icon_emoji=":warning:",
                 channel="", timeout=10):
        self.webhook_url = webhook_url
        self.username = username
        self.icon_emoji = icon_emoji
        self.channel = channel
        self.timeout = timeout
        self.client = HTTPClient(timeout=timeout, channel=self.name)

    def send(self, recipient, subject, content):
        payload = {
            "text": f"*{subject}*\n{content}",
            "username": self.username,
            "icon_emoji": self.icon_emoji,
        }
        target = recipient or self.channel
        if target:
            payload["channel"] = target
        self.client.post_json(self.webhook_url, payload)


def dingtalk_sign(secret, timestamp_ms):
    """HMAC-SHA256 of "<timestamp>\\n<secret>", base64 encoded."""
    string_to_sign = f"{timestamp_ms}\n{secret}"
    digest = hmac.new(secret.encode("utf-8"), string_to_sign.encode("utf-8"),
                      hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class DingTalkChannel:
    """DingTalk group robot with optional signed requests.

    The recipient is a comma separated list of mobile numbers to @-mention.
    """

    name = ChannelType.DINGTALK.value

    def __init__(self, webhook_url, secret="", timeout=10):
        self.webhook_url = webhook_url
        self.secret = secret
        self.timeout = timeout
        self.client = HTTPClient(timeout=timeout, channel=self.name)

    def send(self, recipient, subject, content):
        payload = {
            "msgtype": "text",
            "text": {"content": f"{subject}\n{content}"},
        }
        mobiles = [m.strip() for m in (recipient or "").split(",") if m.strip()]
        if mobiles:
            payload["at"] = {"atMobiles": mobiles, "isAtAll": False}

        params = None
        if self.secret:
            timestamp = int(time.time() * 1000)
            params = {"timestamp": timestamp, "sign": dingtalk_sign(self.secret, timestamp)}

        body = self.client.post_json(self.webhook_url, payload, params=params)
        try:
            result = json.loads(body or "{}")
        except ValueError:
            return
        if result.get("errcode", 0) != 0:
            raise DeliveryError(f"DingTalk error {result.get('errcode')}: {result.get('errmsg')}",
                                channel=self.name, response_body=body)


class SMSChannel:
    """SMS through a generic HTTP gateway: POST {to, from, message}."""

    name = ChannelType.SMS.value

    def __init__(self, gateway_url, api_key="", sender="", max_length=480, timeout=10):
        self.gateway_url = gateway_url
        self.sender = sender
        self.max_length = max_length
        self.timeout = timeout
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self.client = HTTPClient(timeout=timeout, headers=headers, channel=self.name)

    def send(self, recipient, subject, content):
        if not recipient:
            raise DeliveryError("No SMS recipient", channel=self.name)
        message = f"{subject}: {content}"[:self.max_length]
        self.client.post_json(self.gateway_url, {
            "to": recipient,
            "from": self.sender,
            "message": message,
        })


def build_channels(notifications_config: dict) -> dict:
    """Instantiate every enabled channel from the `notifications.channels` config."""
    from alerts.telegram_channel import TelegramChannel
    from notifications.email_sender import EmailSender
    from notifications.telegram_bot import TelegramBot

    cfg = (notifications_config or {}).get("channels", {})
    channels = {}

    def enabled(name):
        return cfg.get(name, {}).get("enabled", False)

    if enabled("console"):
        channels["console"] = ConsoleChannel()
    if enabled("file"):
        channels["file"] = FileChannel(cfg["file"].get("path", "data/notifications.jsonl"))
    if enabled("email"):
        channels["email"] = EmailChannel(EmailSender(cfg["email"]))
    if enabled("webhook"):
        c = cfg["webhook"]
        channels["webhook"] = WebhookChannel(
            c.get("url", ""), method=c.get("method", "POST"),
            headers=c.get("headers"), timeout=c.get("timeout_seconds", 10))
    if enabled("slack"):
        c = cfg["slack"]
        channels["slack"] = SlackChannel(
            c.get("webhook_url", ""), username=c.get("username", "Ops Monitor"),
            icon_emoji=c.get("icon_emoji", ":warning:"), channel=c.get("channel", ""),
            timeout=c.get("timeout_seconds", 10))
    if enabled("dingtalk"):
        c = cfg["dingtalk"]
        channels["dingtalk"] = DingTalkChannel(
            c.get("webhook_url", ""), secret=c.get("secret", ""),
            timeout=c.get("timeout_seconds", 10))
    if enabled("telegram"):
        c = cfg["telegram"]
        token = os.environ.get("OPS_MONITOR_TELEGRAM_TOKEN", c.get("bot_token", ""))
        bot = TelegramBot(token, c.get("chat_id", ""), timeout=c.get("timeout_seconds", 30))
        channels["telegram"] = TelegramChannel(bot)
    if enabled("sms"):
        c = cfg["sms"]
        channels["sms"] = SMSChannel(
            c.get("gateway_url", ""), api_key=c.get("api_key", ""),
            sender=c.get("sender", ""), timeout=c.get("timeout_seconds", 10))

    logger.info(f"Notification channels enabled: {sorted(channels) or 'none'}")
    return channels
