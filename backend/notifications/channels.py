"""Notification channel implementations.

Each channel handles delivery for one transport (email, Slack, Teams,
webhook). The NotificationManager dispatches to the appropriate channel.
Channels report failures as DeliveryResult(success=False); they do not
raise.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    """Built-in channel names. Definitions may name others; those fail delivery
    unless a channel with that name is registered."""
    EMAIL = "email"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"


@dataclass
class Notification:
    """A notification to be delivered to one recipient on one channel."""
    title: str
    message: str
    channel: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: str = ""  # email address, Slack channel, webhook URL, ...
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: str
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _http_request(
    client: Optional[httpx.AsyncClient],
    method: str,
    url: str,
    timeout: float,
    **kwargs,
) -> httpx.Response:
    """Send one request on the given client, or on a short-lived one."""
    if client is not None:
        response = await client.request(method, url, **kwargs)
    else:
        async with httpx.AsyncClient(timeout=timeout) as c:
            response = await c.request(method, url, **kwargs)
    response.raise_for_status()
    return response


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    channel_type: str

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through this channel."""
        ...


# ─── Email Channel ─────────────────────────────────────────────

class EmailChannel(BaseChannel):
    """Send notifications via SMTP email.

    Config:
        smtp_host, smtp_port, smtp_user, smtp_password,
        from_address, use_tls
    """

    channel_type = NotificationChannel.EMAIL.value

    def __init__(self, config: dict = None):
        self.config = config or {}

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send email notification."""
        try:
            smtp_host = self.config.get("smtp_host", "localhost")
            smtp_port = self.config.get("smtp_port", 587)
            smtp_user = self.config.get("smtp_user", "")
            smtp_pass = self.config.get("smtp_password", "")
            from_addr = self.config.get("from_address", "workflows@localhost")
            use_tls = self.config.get("use_tls", True)

            msg = MIMEMultipart("alternative")
            msg["Subject"] = notification.title
            msg["From"] = from_addr
            msg["To"] = notification.recipient
            if notification.idempotency_key:
                msg["X-Workflow-Notification-Key"] = notification.idempotency_key

            msg.attach(MIMEText(notification.message, "plain"))

            html = f"""
            <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
                <h2 style="color: #333;">{notification.title}</h2>
                <div style="color: #555; line-height: 1.6;">
                    {notification.message.replace(chr(10), '<br>')}
                </div>
                <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">
                <p style="color: #999; font-size: 12px;">
                    Sent by the workflow execution engine
                </p>
            </div>
            """
            msg.attach(MIMEText(html, "html"))

            # smtplib is blocking; keep it off the event loop
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self._send_smtp(smtp_host, smtp_port, smtp_user, smtp_pass, from_addr, notification.recipient, msg, use_tls),
            )

            return DeliveryResult(
                success=True,
                channel=self.channel_type,
                recipient=notification.recipient,
                message="Email sent",
                delivered_at=_now(),
            )

        except Exception as e:
            logger.error(f"Email send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )

    def _send_smtp(self, host, port, user, password, from_addr, to_addr, msg, use_tls):
        """Synchronous SMTP send."""
        with smtplib.SMTP(host, port) as server:
            if use_tls:
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(from_addr, to_addr, msg.as_string())


# ─── Slack Channel ─────────────────────────────────────────────

class SlackChannel(BaseChannel):
    """Send notifications to Slack via an incoming webhook.

    Config:
        webhook_url
    """

    channel_type = NotificationChannel.SLACK.value

    def __init__(self, config: dict = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or {}
        self._client = client

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send Slack notification."""
        try:
            webhook_url = self.config.get("webhook_url")
            if not webhook_url:
                return DeliveryResult(
                    success=False,
                    channel=self.channel_type,
                    recipient=notification.recipient,
                    error="No Slack webhook URL configured",
                )

            priority_emoji = {
                NotificationPriority.HIGH: ":warning:",
                NotificationPriority.CRITICAL: ":rotating_light:",
            }
            emoji = priority_emoji.get(notification.priority, "")

            payload = {
                "channel": notification.recipient or "#workflow-alerts",
                "blocks": [
                    {
                        "type": "header",
                        "text": {
                            "type": "plain_text",
                            "text": f"{emoji} {notification.title}".strip(),
                        },
                    },
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": notification.message,
                        },
                    },
                ],
            }

            if notification.metadata:
                fields = [
                    {"type": "mrkdwn", "text": f"*{key}:*\n{value}"}
                    for key, value in list(notification.metadata.items())[:10]
                ]
                payload["blocks"].append({"type": "section", "fields": fields})

            await _http_request(self._client, "POST", webhook_url, timeout=10, json=payload)

            return DeliveryResult(
                success=True,
                channel=self.channel_type,
                recipient=notification.recipient or "#workflow-alerts",
                message="Slack message sent",
                delivered_at=_now(),
            )

        except Exception as e:
            logger.error(f"Slack send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )


# ─── Teams Channel ─────────────────────────────────────────────

class TeamsChannel(BaseChannel):
    """Send notifications to Microsoft Teams via an incoming webhook.

    Config:
        webhook_url
    """

    channel_type = NotificationChannel.TEAMS.value

    def __init__(self, config: dict = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or {}
        self._client = client

    async def send(self, notification: Notification) -> DeliveryResult:
        webhook_url = self.config.get("webhook_url")
        if not webhook_url:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error="No Teams webhook URL configured",
            )

        theme = "D83B01" if notification.priority in (NotificationPriority.HIGH, NotificationPriority.CRITICAL) else "0078D7"
        payload = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": notification.title,
            "themeColor": theme,
            "title": notification.title,
            "text": notification.message,
            "sections": [
                {"facts": [{"name": str(k), "value": str(v)} for k, v in notification.metadata.items()]}
            ] if notification.metadata else [],
        }

        try:
            await _http_request(self._client, "POST", webhook_url, timeout=10, json=payload)
        except Exception as e:
            logger.error(f"Teams send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )

        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=notification.recipient,
            message="Teams message sent",
            delivered_at=_now(),
        )


# ─── Webhook Channel ──────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """Send notifications to arbitrary HTTP endpoints.

    Config:
        url: Target URL (used when the recipient is not itself a URL)
        method: HTTP method (default POST)
        headers: Additional headers
    """

    channel_type = NotificationChannel.WEBHOOK.value

    def __init__(self, config: dict = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or {}
        self._client = client

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send webhook notification."""
        try:
            recipient = notification.recipient
            url = recipient if recipient.startswith(("http://", "https://")) else self.config.get("url")
            if not url:
                return DeliveryResult(
                    success=False,
                    channel=self.channel_type,
                    recipient=recipient,
                    error="No webhook URL",
                )

            method = self.config.get("method", "POST").upper()
            headers = {
                "Content-Type": "application/json",
                "X-Workflow-Event": "notification",
                **self.config.get("headers", {}),
            }
            if notification.idempotency_key:
                headers["Idempotency-Key"] = notification.idempotency_key

            payload = {
                "title": notification.title,
                "message": notification.message,
                "priority": notification.priority.value,
                "channel": notification.channel,
                "recipient": recipient,
                "metadata": notification.metadata,
                "timestamp": notification.created_at,
            }

            response = await _http_request(self._client, method, url, timeout=15, json=payload, headers=headers)

            return DeliveryResult(
                success=True,
                channel=self.channel_type,
                recipient=url,
                message=f"Webhook delivered (HTTP {response.status_code})",
                delivered_at=_now(),
            )

        except Exception as e:
            logger.error(f"Webhook send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )
