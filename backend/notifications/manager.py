"""Notification Manager: central router for all notification channels.

Routes each notification to the channel registered under its name.
Channels are configured from app settings at startup.
"""

import logging
from typing import Optional

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    EmailChannel,
    Notification,
    NotificationPriority,
    SlackChannel,
    TeamsChannel,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


class NotificationManager:
    """Central notification router.

    Manages channel registration and per-recipient delivery.
    """

    def __init__(self):
        self._channels: dict[str, BaseChannel] = {}
        self._initialized = False

    def register_channel(self, channel: BaseChannel, name: Optional[str] = None) -> None:
        """Register a notification channel (under its channel_type unless a name is given)."""
        key = name or channel.channel_type
        self._channels[key] = channel
        logger.info(f"Notification channel registered: {key}")

    def has_channel(self, name: str) -> bool:
        return name in self._channels

    def configure_channels(self, config: dict) -> None:
        """Configure all channels from app settings.

        Args:
            config: Dict with channel configs:
                {
                    "email": {"smtp_host": ..., "smtp_port": ...},
                    "slack": {"webhook_url": ...},
                    "teams": {"webhook_url": ...},
                    "webhook": {"url": ...},
                }
        """
        if "email" in config:
            self.register_channel(EmailChannel(config["email"]))

        if "slack" in config:
            self.register_channel(SlackChannel(config["slack"]))

        if "teams" in config:
            self.register_channel(TeamsChannel(config["teams"]))

        if "webhook" in config:
            self.register_channel(WebhookChannel(config["webhook"]))

        self._initialized = True

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through the channel it names.

        Args:
            notification: Notification to send

        Returns:
            DeliveryResult (success=False for an unconfigured channel)
        """
        channel = self._channels.get(notification.channel)
        if not channel:
            return DeliveryResult(
                success=False,
                channel=notification.channel,
                recipient=notification.recipient,
                error=f"Channel not configured: {notification.channel}",
            )

        result = await channel.send(notification)

        if result.success:
            logger.info(
                f"Notification sent via {notification.channel} to {notification.recipient}"
            )
        else:
            logger.warning(
                f"Notification failed via {notification.channel}: {result.error}"
            )

        return result

    async def send_multi(
        self,
        title: str,
        message: str,
        channels: list[str],
        recipients: list[str] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        metadata: dict = None,
        idempotency_key: str = None,
    ) -> list[DeliveryResult]:
        """Send a notification to every recipient on every channel.

        Args:
            title: Notification title
            message: Notification body
            channels: Channel names to send to
            recipients: Recipients; an empty list sends once per channel
                to the channel's configured default target
            priority: Notification priority
            metadata: Additional data
            idempotency_key: Forwarded to channels that support it

        Returns:
            List of DeliveryResults, one per (channel, recipient)
        """
        targets = recipients or [""]
        results = []

        for ch in channels:
            for recipient in targets:
                notification = Notification(
                    title=title,
                    message=message,
                    channel=ch,
                    priority=priority,
                    recipient=recipient,
                    metadata=metadata or {},
                    idempotency_key=idempotency_key,
                )
                result = await self.send(notification)
                results.append(result)

        return results

    def get_status(self) -> dict:
        """Get notification manager status."""
        return {
            "initialized": self._initialized,
            "channels": sorted(self._channels.keys()),
        }
