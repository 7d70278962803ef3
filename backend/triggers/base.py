"""Base trigger classes and trigger type registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class TriggerTypeEnum(str, Enum):
    """All supported trigger types (the `type` tag of a definition trigger)."""

    EVENT = "event"
    SCHEDULED = "scheduled"
    THRESHOLD = "threshold"
    MANUAL = "manual"


@dataclass
class TriggerEvent:
    """Represents a single trigger firing event.

    This is the payload that gets passed from a trigger
    to the run scheduler.
    """

    trigger_id: str
    trigger_type: str
    workflow_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> dict[str, Any]:
        """The run's triggered_by record."""
        return {
            "type": self.trigger_type,
            "trigger_id": self.trigger_id,
            "fired_at": self.timestamp.isoformat(),
            **self.metadata,
        }


@dataclass
class TriggerResult:
    """Result of a trigger operation (start/stop/test/fire)."""

    success: bool
    message: str
    trigger_id: str
    run_id: Optional[str] = None
    error: Optional[str] = None


FireCallback = Callable[[str, dict], Awaitable[TriggerResult]]


class BaseTriggerHandler(ABC):
    """Abstract base class for all trigger type handlers.

    Each trigger type (event, scheduled, threshold, manual)
    implements this interface. The TriggerManager uses these
    handlers to start/stop/test triggers, and handlers report
    firings back through the fire callback.
    """

    trigger_type: TriggerTypeEnum

    def __init__(self):
        self._active: dict[str, dict] = {}
        self._fire_callback: Optional[FireCallback] = None

    def set_fire_callback(self, callback: FireCallback) -> None:
        """Set the callback used when a trigger condition is met.

        Args:
            callback: Async callable(trigger_id, payload) that fires a trigger
        """
        self._fire_callback = callback

    async def _fire(self, trigger_id: str, payload: dict) -> Optional[TriggerResult]:
        if self._fire_callback is None:
            return None
        return await self._fire_callback(trigger_id, payload)

    def is_active(self, trigger_id: str) -> bool:
        return trigger_id in self._active

    @abstractmethod
    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        """Start listening for this trigger.

        Args:
            trigger_id: ID of the trigger
            config: Type-specific configuration

        Returns:
            TriggerResult indicating success/failure
        """
        ...

    @abstractmethod
    async def stop(self, trigger_id: str) -> TriggerResult:
        """Stop listening for this trigger.

        Args:
            trigger_id: ID of the trigger to stop

        Returns:
            TriggerResult indicating success/failure
        """
        ...

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        """Validate trigger configuration.

        Args:
            config: Configuration dict to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        return True, None

    def _invalid(self, trigger_id: str, error: str) -> TriggerResult:
        return TriggerResult(
            success=False,
            message=f"Invalid config: {error}",
            trigger_id=trigger_id,
            error=error,
        )
