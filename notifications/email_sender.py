"""
SMTP email sender for alert notifications.

Handles:
  - SMTP connection with optional STARTTLS
  - MIME multipart construction (plaintext + HTML)
  - Credential management (env vars > config file)
"""
import os
import ssl
import smtplib
import logging
from html import escape
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

from utils.errors import DeliveryError

logger = logging.getLogger("opsmonitor.notifications.email_sender")


class EmailSender:
    """
    SMTP email sender.

    Credential resolution order:
      1. Environment variables: OPS_MONITOR_SMTP_USER, OPS_MONITOR_SMTP_PASS
      2. Config: notifications.channels.email.smtp_username / smtp_password
    """

    def __init__(self, email_config: dict):
        email_config = email_config or {}
        self.smtp_host = email_config.get("smtp_host", "localhost")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "Ops Monitor")
        self.timeout = email_config.get("timeout_seconds", 30)

        self.username = os.environ.get(
            "OPS_MONITOR_SMTP_USER",
            email_config.get("smtp_username", ""),
        )
        self.password = os.environ.get(
            "OPS_MONITOR_SMTP_PASS",
            email_config.get("smtp_password", ""),
        )

    def is_configured(self) -> bool:
        """Check if the fields needed to open a connection are present."""
        return bool(self.smtp_host and self.from_address)

    def build_message(self, recipient: str, subject: str, content: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)

        html = f"""
        <div style="font-family: system-ui, sans-serif; max-width: 560px; margin: 0 auto;
                    padding: 20px; color: #1E272E;">
            <h3 style="margin-top: 0;">{escape(subject)}</h3>
            <pre style="background: #F0F1F6; padding: 16px; border-radius: 8px;
                        white-space: pre-wrap;">{escape(content)}</pre>
        </div>
        """
        msg.attach(MIMEText(content, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def send_message(self, recipient: str, subject: str, content: str) -> None:
        """Send one email. Raises DeliveryError on any SMTP failure."""
        if not self.is_configured():
            raise DeliveryError("Email not configured", channel="email")
        if not recipient:
            raise DeliveryError("No email recipient", channel="email")
        self._send(self.build_message(recipient, subject, content))

    def test_connection(self) -> dict:
        """Test SMTP connectivity without sending an email."""
        try:
            with self._connect() as server:
                return {"status": "ok", "message": "SMTP connection successful",
                        "server_response": str(server.noop())}
        except (smtplib.SMTPException, OSError) as e:
            return {"status": "error", "message": str(e)}

    def _connect(self):
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        server.ehlo()
        if self.use_tls:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        if self.username and self.password:
            server.login(self.username, self.password)
        return server

    def _send(self, msg: MIMEMultipart) -> None:
        try:
            with self._connect() as server:
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise DeliveryError("SMTP authentication failed", channel="email") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"Recipient refused: {msg['To']}", channel="email") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Email send failed: {e}", channel="email") from e
        logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
