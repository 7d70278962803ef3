"""Trigger Manager: central orchestrator for all trigger types.

The TriggerManager:
1. Registers trigger handlers for each trigger type
2. Starts every trigger of a workflow definition when it is registered
3. Routes trigger firings to the run scheduler through the event callback
4. Manages trigger lifecycle (start, stop) and reports status
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from triggers.base import (
    BaseTriggerHandler,
    TriggerEvent,
    TriggerResult,
    TriggerTypeEnum,
)
from triggers.handlers.event_bus import EventBus, EventBusTriggerHandler
from triggers.handlers.manual import ManualTriggerHandler
from triggers.handlers.schedule import ScheduleTriggerHandler
from triggers.handlers.threshold import ThresholdTriggerHandler
from workflow.definition import (
    EventTrigger,
    ManualTrigger,
    ScheduledTrigger,
    ThresholdTrigger,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


def trigger_config(trigger) -> tuple[str, dict]:
    """Map a definition trigger to (trigger type, handler config)."""
    if isinstance(trigger, EventTrigger):
        config = {"event": trigger.event}
        if trigger.filter:
            config["filter"] = dict(trigger.filter)
        return TriggerTypeEnum.EVENT.value, config
    if isinstance(trigger, ScheduledTrigger):
        return TriggerTypeEnum.SCHEDULED.value, {"cron": trigger.schedule}
    if isinstance(trigger, ThresholdTrigger):
        spec = trigger.threshold
        return TriggerTypeEnum.THRESHOLD.value, {
            "metric": spec.metric,
            "operator": spec.operator.value,
            "value": spec.value,
        }
    if isinstance(trigger, ManualTrigger):
        return TriggerTypeEnum.MANUAL.value, {}
    raise ValueError(f"Unsupported trigger: {trigger!r}")


class TriggerManager:
    """Central manager for all workflow triggers."""

    def __init__(self, event_bus: Optional[EventBus] = None, tick_seconds: float = 1.0):
        self._handlers: dict[str, BaseTriggerHandler] = {}
        self._active_triggers: dict[str, dict] = {}  # trigger_id -> {type, config, workflow_id}
        self._event_callback = None  # Callback to the run scheduler
        self._initialized = False

        self.event_handler = EventBusTriggerHandler(event_bus)
        self.schedule_handler = ScheduleTriggerHandler(tick_seconds=tick_seconds)
        self.threshold_handler = ThresholdTriggerHandler()

        # Register built-in handlers
        self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register all built-in trigger type handlers."""
        self.register_handler(self.event_handler)
        self.register_handler(self.schedule_handler)
        self.register_handler(self.threshold_handler)
        self.register_handler(ManualTriggerHandler())

    def register_handler(self, handler: BaseTriggerHandler) -> None:
        """Register a trigger type handler.

        Args:
            handler: Instance of BaseTriggerHandler to register
        """
        handler.set_fire_callback(self.fire_trigger)
        self._handlers[handler.trigger_type.value] = handler
        logger.info(f"Registered trigger handler: {handler.trigger_type.value}")

    def set_event_callback(self, callback) -> None:
        """Set the callback function for trigger events.

        The callback should accept a TriggerEvent and return a run ID.
        Typically this starts a run on the workflow engine.

        Args:
            callback: Callable(TriggerEvent) -> str (sync or async)
        """
        self._event_callback = callback

    # ─── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        """Start background trigger sources (the schedule ticker)."""
        self.schedule_handler.start_loop()
        self._initialized = True

    async def shutdown(self) -> None:
        await self.schedule_handler.stop_loop()
        for trigger_id in list(self._active_triggers):
            await self.stop_trigger(trigger_id)
        await self.event_handler.bus.close()

    async def register_definition(self, definition: WorkflowDefinition) -> list[TriggerResult]:
        """Start every trigger of a definition, replacing any started before."""
        await self.unregister_definition(definition.id)
        results = []
        for index, trigger in enumerate(definition.triggers):
            trigger_type, config = trigger_config(trigger)
            trigger_id = f"{definition.id}:{index}:{trigger_type}"
            results.append(await self.start_trigger(trigger_id, trigger_type, config, definition.id))
        return results

    async def unregister_definition(self, definition_id: str) -> int:
        """Stop every trigger of a definition. Returns how many were stopped."""
        trigger_ids = [
            tid for tid, info in self._active_triggers.items()
            if info["workflow_id"] == definition_id
        ]
        for trigger_id in trigger_ids:
            await self.stop_trigger(trigger_id)
        return len(trigger_ids)

    async def start_trigger(
        self,
        trigger_id: str,
        trigger_type: str,
        config: dict,
        workflow_id: str,
    ) -> TriggerResult:
        """Start a trigger: begin listening for events.

        Args:
            trigger_id: Unique trigger ID
            trigger_type: Type string (must match a registered handler)
            config: Type-specific configuration
            workflow_id: Workflow to run when triggered

        Returns:
            TriggerResult
        """
        handler = self._handlers.get(trigger_type)
        if not handler:
            return TriggerResult(
                success=False,
                message=f"Unknown trigger type: {trigger_type}",
                trigger_id=trigger_id,
                error=f"No handler registered for type '{trigger_type}'",
            )

        # Validate config
        is_valid, error = handler.validate_config(config)
        if not is_valid:
            return TriggerResult(
                success=False,
                message=f"Invalid configuration: {error}",
                trigger_id=trigger_id,
                error=error,
            )

        # Record before starting: a handler may fire as soon as it starts
        self._active_triggers[trigger_id] = {
            "type": trigger_type,
            "config": config,
            "workflow_id": workflow_id,
            "started_at": datetime.now(timezone.utc).isoformat(),
            "fired": 0,
        }
        result = await handler.start(trigger_id, config)

        if result.success:
            logger.info(f"Trigger started: {trigger_id} ({trigger_type})")
        else:
            self._active_triggers.pop(trigger_id, None)
            logger.warning(f"Failed to start trigger {trigger_id}: {result.message}")

        return result

    async def stop_trigger(self, trigger_id: str) -> TriggerResult:
        """Stop a trigger: stop listening for events."""
        info = self._active_triggers.get(trigger_id)
        if not info:
            return TriggerResult(
                success=False,
                message="Trigger not active",
                trigger_id=trigger_id,
            )

        handler = self._handlers.get(info["type"])
        if handler:
            result = await handler.stop(trigger_id)
        else:
            result = TriggerResult(
                success=True,
                message="Handler not found, removed from active list",
                trigger_id=trigger_id,
            )

        self._active_triggers.pop(trigger_id, None)
        logger.info(f"Trigger stopped: {trigger_id}")
        return result

    # ─── Firing ────────────────────────────────────────────────

    async def fire_trigger(self, trigger_id: str, payload: dict = None) -> TriggerResult:
        """Fire a trigger: create a TriggerEvent and start a run.

        Called by the handlers when a trigger condition is met
        (event published, cron due, threshold crossed).

        Args:
            trigger_id: ID of the trigger that fired
            payload: Event-specific data

        Returns:
            TriggerResult with run_id if successful
        """
        info = self._active_triggers.get(trigger_id)
        if not info:
            return TriggerResult(
                success=False,
                message="Trigger not active",
                trigger_id=trigger_id,
            )

        event = TriggerEvent(
            trigger_id=trigger_id,
            trigger_type=info["type"],
            workflow_id=info["workflow_id"],
            payload=payload or {},
        )
        info["fired"] += 1
        info["last_fired_at"] = event.timestamp.isoformat()

        run_id = None
        if self._event_callback:
            try:
                run_id = self._event_callback(event)
                if asyncio.iscoroutine(run_id):
                    run_id = await run_id
                logger.info(f"Trigger fired: {trigger_id} -> run {run_id}")
            except Exception as e:
                logger.error(f"Trigger fire failed: {trigger_id}: {e}")
                return TriggerResult(
                    success=False,
                    message=f"Run creation failed: {str(e)}",
                    trigger_id=trigger_id,
                    error=str(e),
                )
        else:
            logger.warning(f"Trigger fired but no event callback set: {trigger_id}")

        return TriggerResult(
            success=True,
            message="Trigger fired successfully",
            trigger_id=trigger_id,
            run_id=run_id,
        )

    async def publish_event(self, name: str, payload: dict = None) -> int:
        """Publish a named event on the event bus."""
        return await self.event_handler.publish(name, payload or {})

    async def observe_metric(self, metric: str, value: float) -> list[str]:
        """Feed one sample of the metric stream to threshold triggers."""
        return await self.threshold_handler.observe(metric, value)

    async def fire_due_schedules(self, now: Optional[datetime] = None) -> list[str]:
        return await self.schedule_handler.fire_due(now)

    # ─── Status ────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        """Get trigger manager status."""
        return {
            "initialized": self._initialized,
            "registered_handlers": list(self._handlers.keys()),
            "active_triggers": len(self._active_triggers),
            "triggers": {
                tid: {
                    "type": info["type"],
                    "workflow_id": info["workflow_id"],
                    "started_at": info["started_at"],
                    "fired": info["fired"],
                }
                for tid, info in self._active_triggers.items()
            },
        }
