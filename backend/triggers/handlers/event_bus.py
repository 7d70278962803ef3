"""Event bus trigger handler.

Event triggers subscribe to a named event on an event bus. Two buses
are available: an in-process bus (the default) and Redis pub/sub, so
that internal services and external systems can publish events that
start workflows.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Awaitable[None]]


# ─── Buses ─────────────────────────────────────────────────────

class EventBus(ABC):
    """A named-channel publish/subscribe bus."""

    @abstractmethod
    async def subscribe(self, channel: str, listener: Listener) -> None:
        ...

    @abstractmethod
    async def unsubscribe(self, channel: str) -> None:
        ...

    @abstractmethod
    async def publish(self, channel: str, payload: dict) -> int:
        """Publish an event. Returns the number of local deliveries or receivers."""
        ...

    async def close(self) -> None:
        return None


class InMemoryEventBus(EventBus):
    """In-process bus: publish awaits every listener of the channel."""

    def __init__(self):
        self._listeners: dict[str, Listener] = {}

    async def subscribe(self, channel: str, listener: Listener) -> None:
        self._listeners[channel] = listener

    async def unsubscribe(self, channel: str) -> None:
        self._listeners.pop(channel, None)

    async def publish(self, channel: str, payload: dict) -> int:
        listener = self._listeners.get(channel)
        if listener is None:
            logger.debug("No subscribers for event: %s", channel)
            return 0
        await listener(channel, payload)
        return 1


class RedisEventBus(EventBus):
    """Redis pub/sub bus. One listener task per subscribed channel."""

    def __init__(self, redis_url: str, client=None):
        self._redis_url = redis_url
        self._client = client
        self._listener_tasks: dict[str, asyncio.Task] = {}

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self._redis_url)
        return self._client

    async def subscribe(self, channel: str, listener: Listener) -> None:
        if channel in self._listener_tasks:
            return
        task = asyncio.create_task(self._listen_channel(channel, listener))
        self._listener_tasks[channel] = task
        logger.info("Started Redis subscriber for channel: %s", channel)

    async def unsubscribe(self, channel: str) -> None:
        task = self._listener_tasks.pop(channel, None)
        if task and not task.done():
            task.cancel()
            logger.info("Stopped Redis subscriber for channel: %s", channel)

    async def publish(self, channel: str, payload: dict) -> int:
        return await self._get_client().publish(channel, json.dumps(payload))

    async def close(self) -> None:
        for channel in list(self._listener_tasks):
            await self.unsubscribe(channel)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _listen_channel(self, channel: str, listener: Listener):
        """Background task that listens to a Redis pub/sub channel."""
        try:
            pubsub = self._get_client().pubsub()
            await pubsub.subscribe(channel)

            logger.info("Listening on Redis channel: %s", channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue

                try:
                    raw_data = message["data"]
                    if isinstance(raw_data, bytes):
                        raw_data = raw_data.decode("utf-8")
                    payload = json.loads(raw_data) if raw_data else {}
                except (json.JSONDecodeError, UnicodeDecodeError):
                    payload = {"raw": str(message["data"])}
                if not isinstance(payload, dict):
                    payload = {"value": payload}

                await listener(channel, payload)

        except asyncio.CancelledError:
            logger.info("Redis listener cancelled for channel: %s", channel)
        except Exception as exc:
            logger.error(
                "Redis listener error for channel %s: %s", channel, exc, exc_info=True
            )


def create_event_bus(backend: str, redis_url: str = "") -> EventBus:
    if backend == "redis":
        return RedisEventBus(redis_url)
    if backend != "memory":
        raise ValueError(f"Unknown event bus backend: {backend}")
    return InMemoryEventBus()


# ─── Handler ───────────────────────────────────────────────────

class EventBusTriggerHandler(BaseTriggerHandler):
    """Handler for event triggers.

    Config schema:
        {
            "event": "anomaly.detected",   # event name (bus channel)
            "filter": {                     # optional payload filter (key-value match)
                "amount_gt": 100,
                "status": "paid"
            }
        }
    """

    trigger_type = TriggerTypeEnum.EVENT

    def __init__(self, bus: Optional[EventBus] = None):
        super().__init__()
        self.bus = bus or InMemoryEventBus()
        self._subscriptions: dict[str, list[str]] = {}  # event -> [trigger_ids]

    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        """Subscribe to an event channel."""
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return self._invalid(trigger_id, error)

        event = config["event"]
        self._active[trigger_id] = config

        if event not in self._subscriptions:
            self._subscriptions[event] = []
            try:
                await self.bus.subscribe(event, self._on_event)
            except Exception as exc:
                logger.error("Failed to subscribe to %s: %s", event, exc)
                del self._subscriptions[event]
                self._active.pop(trigger_id, None)
                return TriggerResult(
                    success=False,
                    message=f"Failed to subscribe: {exc}",
                    trigger_id=trigger_id,
                    error=str(exc),
                )
        self._subscriptions[event].append(trigger_id)

        return TriggerResult(
            success=True,
            message=f"Subscribed to event: {event}",
            trigger_id=trigger_id,
        )

    async def stop(self, trigger_id: str) -> TriggerResult:
        """Unsubscribe from the event channel."""
        config = self._active.pop(trigger_id, None)
        if config:
            event = config.get("event")
            if event and event in self._subscriptions:
                self._subscriptions[event] = [
                    t for t in self._subscriptions[event] if t != trigger_id
                ]
                if not self._subscriptions[event]:
                    del self._subscriptions[event]
                    await self.bus.unsubscribe(event)

        return TriggerResult(
            success=True,
            message="Unsubscribed from event",
            trigger_id=trigger_id,
        )

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        """Validate event config."""
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        if not config.get("event"):
            return False, "Missing required field: event"
        return True, None

    def get_triggers_for_event(self, event: str) -> list[str]:
        """Get all trigger IDs subscribed to an event."""
        return list(self._subscriptions.get(event, []))

    async def publish(self, event: str, payload: Optional[dict] = None) -> int:
        return await self.bus.publish(event, payload or {})

    async def _on_event(self, event: str, payload: dict) -> None:
        """Fire every trigger subscribed to the event whose filter matches."""
        for trigger_id in self.get_triggers_for_event(event):
            config = self._active.get(trigger_id, {})
            filter_rules = config.get("filter", {})

            if filter_rules and not self._matches_filter(payload, filter_rules):
                logger.debug("Event %s filtered out for trigger %s", event, trigger_id)
                continue

            try:
                await self._fire(trigger_id, payload)
                logger.info("Event %s fired trigger %s", event, trigger_id)
            except Exception as exc:
                logger.error("Failed to fire trigger %s: %s", trigger_id, exc)

    @staticmethod
    def _matches_filter(payload: dict, filter_rules: dict[str, Any]) -> bool:
        """Check if a payload matches filter rules.

        Supports:
        - Exact match: {"status": "paid"} → payload["status"] == "paid"
        - Greater than: {"amount_gt": 100} → payload["amount"] > 100
        - Less than: {"amount_lt": 50} → payload["amount"] < 50
        - Contains: {"tags_contains": "urgent"} → "urgent" in payload["tags"]
        """
        for key, expected in filter_rules.items():
            try:
                if key.endswith("_gt"):
                    field = key[:-3]
                    if field not in payload or payload[field] <= expected:
                        return False
                elif key.endswith("_lt"):
                    field = key[:-3]
                    if field not in payload or payload[field] >= expected:
                        return False
                elif key.endswith("_contains"):
                    field = key[:-9]
                    if field not in payload or expected not in payload[field]:
                        return False
                else:
                    if key not in payload or payload[key] != expected:
                        return False
            except TypeError:
                return False
        return True
