"""Notification adapter implementations.

Each adapter handles delivery for one transport. The NotificationManager
picks the adapter named by the message (or its default) and hands it the
rendered message. Adapters report delivery problems through DeliveryResult
instead of raising; the manager turns a failed result into an error.
"""

import asyncio
import re
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog

from workflow.models import NotificationMessage
from workflow.ports import HttpClient

logger = structlog.get_logger(__name__)

SLACK_API_URL = "https://slack.com/api/chat.postMessage"
SLACK_TS_RE = re.compile(r"^\d+\.\d+$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    adapter: str
    recipient: str = ""
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


# ─── Base Adapter ──────────────────────────────────────────────

class BaseAdapter(ABC):
    """Abstract base for notification adapters.

    ``type`` identifies the implementation; ``name`` is the key messages
    use to pick an adapter and defaults to the type.
    """

    type: str
    name: str

    @abstractmethod
    async def send(self, message: NotificationMessage) -> DeliveryResult:
        """Deliver an already rendered message."""
        ...

    def _failed(self, error: str, recipient: Optional[str] = None) -> DeliveryResult:
        return DeliveryResult(success=False, adapter=self.name, recipient=recipient or "", error=error)


# ─── Console Adapter ───────────────────────────────────────────

class ConsoleAdapter(BaseAdapter):
    """Writes notifications to the process log. Useful in development."""

    type = "console"

    def __init__(self, name: str = "console"):
        self.name = name
        self.sent: list[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        self.sent.append(message)
        logger.info(
            "Notification",
            adapter=self.name,
            channel=message.channel,
            to=message.to,
            subject=message.subject,
            body=message.body,
        )
        return DeliveryResult(
            success=True,
            adapter=self.name,
            recipient=message.to or "",
            message="Logged",
            delivered_at=_now(),
        )


# ─── Webhook Adapter ───────────────────────────────────────────

class WebhookAdapter(BaseAdapter):
    """POST notifications as JSON to an HTTP endpoint.

    The target is ``message.to`` when it is a URL, else the configured url.
    """

    type = "webhook"

    def __init__(
        self,
        http_client: HttpClient,
        url: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        name: str = "webhook",
    ):
        self.name = name
        self.http_client = http_client
        self.url = url
        self.headers = headers or {}

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        url = message.to if message.to and message.to.startswith(("http://", "https://")) else self.url
        if not url:
            return self._failed("No webhook URL")

        payload = {
            "channel": message.channel,
            "to": message.to,
            "subject": message.subject,
            "body": message.body,
            "metadata": message.metadata,
            "timestamp": message.created_at.isoformat(),
        }
        await self.http_client.request(
            url,
            method="POST",
            headers={"X-Workflow-Event": "notification", **self.headers},
            body=payload,
        )
        return DeliveryResult(
            success=True,
            adapter=self.name,
            recipient=url,
            message="Webhook delivered",
            delivered_at=_now(),
        )


# ─── Slack Adapter ─────────────────────────────────────────────

class SlackAdapter(BaseAdapter):
    """Post notifications through the Slack Web API (chat.postMessage).

    Config:
        bot_token (required), default_channel

    Message metadata may carry ``thread_ts`` (or ``threadTs``) to reply in
    a thread, ``blocks`` for Block Kit layouts and ``mrkdwn``.
    """

    type = "slack"

    def __init__(
        self,
        bot_token: str,
        default_channel: Optional[str] = None,
        name: str = "slack",
        api_url: str = SLACK_API_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not bot_token:
            raise ValueError("Slack adapter requires bot_token")
        self.name = name
        self.bot_token = bot_token
        self.default_channel = default_channel
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    def build_payload(self, message: NotificationMessage, channel: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel": channel,
            "text": message.body or message.subject or "Notification",
        }
        metadata = message.metadata or {}

        thread_ts = metadata.get("thread_ts") or metadata.get("threadTs")
        if isinstance(thread_ts, str) and SLACK_TS_RE.match(thread_ts):
            payload["thread_ts"] = thread_ts
        if isinstance(metadata.get("blocks"), list):
            payload["blocks"] = metadata["blocks"]
        if isinstance(metadata.get("mrkdwn"), bool):
            payload["mrkdwn"] = metadata["mrkdwn"]
        return payload

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        channel = message.channel or self.default_channel
        if not channel:
            return self._failed("Slack adapter requires a channel")

        payload = self.build_payload(message, channel)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.bot_token}"},
                )
            if not response.is_success:
                return self._failed(f"Slack API error: {response.text}", channel)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Slack send failed", adapter=self.name, channel=channel, error=str(e))
            return self._failed(f"Slack API error: {e}", channel)

        if not data.get("ok"):
            return self._failed(f"Slack API error: {data.get('error') or 'unknown_error'}", channel)

        return DeliveryResult(
            success=True,
            adapter=self.name,
            recipient=channel,
            message="Slack message sent",
            delivered_at=_now(),
        )


# ─── Email Adapter ─────────────────────────────────────────────

class EmailAdapter(BaseAdapter):
    """Send notifications as plain-text email.

    Config:
        from_address, outbox_file, smtp_host, smtp_port, smtp_user,
        smtp_password, use_tls

    With ``smtp_host`` set, mail goes out over SMTP. Without it every
    message is appended to ``outbox_file``, which is what development
    setups use.
    """

    type = "email"

    def __init__(
        self,
        from_address: str = "workflows@localhost",
        outbox_file: str = "./data/email-outbox.log",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        use_tls: bool = True,
        name: str = "email",
    ):
        self.name = name
        self.from_address = from_address
        self.outbox_file = Path(outbox_file)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        if not message.to:
            return self._failed('Email adapter requires "to"')

        subject = message.subject or "Notification"
        body = message.body or ""
        loop = asyncio.get_running_loop()
        try:
            if self.smtp_host:
                await loop.run_in_executor(None, self._send_smtp, message.to, subject, body)
                delivered = "Email sent"
            else:
                await loop.run_in_executor(None, self._append_outbox, message.to, subject, body)
                delivered = f"Email written to {self.outbox_file}"
        except (OSError, smtplib.SMTPException) as e:
            logger.error("Email send failed", adapter=self.name, to=message.to, error=str(e))
            return self._failed(str(e), message.to)

        return DeliveryResult(
            success=True,
            adapter=self.name,
            recipient=message.to,
            message=delivered,
            delivered_at=_now(),
        )

    def _append_outbox(self, to: str, subject: str, body: str) -> None:
        entry = "\n".join([
            f"=== Email via {self.name} ===",
            f"From: {self.from_address}",
            f"To: {to}",
            f"Subject: {subject}",
            "",
            body,
            "\n",
        ])
        self.outbox_file.parent.mkdir(parents=True, exist_ok=True)
        with self.outbox_file.open("a", encoding="utf-8") as f:
            f.write(entry)

    def _send_smtp(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to

        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_address, [to], msg.as_string())
