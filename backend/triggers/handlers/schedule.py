"""Schedule trigger handler.

Uses cron expressions (5 fields, or 6 with seconds) to trigger
workflows. Each active schedule keeps its next run time computed with
croniter; a tick loop fires every schedule that is due and advances it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum

logger = logging.getLogger(__name__)


def compute_next_run(cron_expression: str, after: datetime, tz: str = "UTC") -> datetime:
    """Next matching time strictly after `after`, returned in UTC."""
    tz_obj = ZoneInfo(tz)
    cron = croniter(cron_expression, after.astimezone(tz_obj))
    next_local = cron.get_next(datetime)
    return next_local.astimezone(timezone.utc)


def cron_error(cron_expression: str) -> Optional[str]:
    """Why a cron expression is unusable, or None if it is fine."""
    parts = cron_expression.strip().split()
    if len(parts) not in (5, 6):
        return f"invalid cron expression (expected 5-6 fields, got {len(parts)})"
    if not croniter.is_valid(cron_expression):
        return f"invalid cron expression: {cron_expression}"
    return None


class ScheduleTriggerHandler(BaseTriggerHandler):
    """Handler for cron-based scheduled triggers.

    Config schema:
        {
            "cron": "0 9 * * MON",          # cron expression (5 or 6 fields)
            "timezone": "Europe/Sofia"        # IANA timezone, default UTC
        }
    """

    trigger_type = TriggerTypeEnum.SCHEDULED

    def __init__(self, tick_seconds: float = 1.0):
        super().__init__()
        self._tick_seconds = tick_seconds
        self._next_runs: dict[str, datetime] = {}
        self._loop_task: Optional[asyncio.Task] = None

    async def start(self, trigger_id: str, config: dict, now: Optional[datetime] = None) -> TriggerResult:
        """Register a scheduled trigger and compute its first run time."""
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return self._invalid(trigger_id, error)

        now = now or datetime.now(timezone.utc)
        self._active[trigger_id] = config
        self._next_runs[trigger_id] = compute_next_run(config["cron"], now, config.get("timezone", "UTC"))
        logger.info(
            "Registered schedule trigger %s with cron '%s', next run %s",
            trigger_id,
            config["cron"],
            self._next_runs[trigger_id].isoformat(),
        )

        return TriggerResult(
            success=True,
            message=f"Schedule registered: {config['cron']}",
            trigger_id=trigger_id,
        )

    async def stop(self, trigger_id: str) -> TriggerResult:
        """Unregister a scheduled trigger."""
        self._active.pop(trigger_id, None)
        self._next_runs.pop(trigger_id, None)
        logger.info("Unregistered schedule trigger %s", trigger_id)
        return TriggerResult(
            success=True,
            message="Schedule unregistered",
            trigger_id=trigger_id,
        )

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        """Validate cron config."""
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        cron = config.get("cron")
        if not cron:
            return False, "Missing required field: cron"
        error = cron_error(cron)
        if error:
            return False, error
        tz = config.get("timezone", "UTC")
        try:
            ZoneInfo(tz)
        except (KeyError, ValueError) as exc:
            return False, f"Unknown timezone '{tz}': {exc}"
        return True, None

    def next_run(self, trigger_id: str) -> Optional[datetime]:
        return self._next_runs.get(trigger_id)

    async def fire_due(self, now: Optional[datetime] = None) -> list[str]:
        """Fire every schedule whose next run time has passed.

        A schedule fires at most once per tick even if several matching
        times were missed; its next run is computed from `now`.

        Returns:
            IDs of the triggers fired
        """
        now = now or datetime.now(timezone.utc)
        due = [tid for tid, at in self._next_runs.items() if at <= now]
        fired = []
        for trigger_id in due:
            config = self._active.get(trigger_id)
            if config is None:
                continue
            scheduled_for = self._next_runs[trigger_id]
            self._next_runs[trigger_id] = compute_next_run(config["cron"], now, config.get("timezone", "UTC"))
            try:
                await self._fire(trigger_id, {"scheduled_for": scheduled_for.isoformat(), "cron": config["cron"]})
                fired.append(trigger_id)
            except Exception as exc:
                logger.error("Failed to fire schedule %s: %s", trigger_id, exc, exc_info=True)
        return fired

    def start_loop(self) -> None:
        """Start the background tick loop."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._tick_loop(), name="schedule-ticker")

    async def stop_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task and not task.done():
            task.cancel()
            await asyncio.wait([task])

    async def _tick_loop(self) -> None:
        logger.info("Schedule ticker started (every %ss)", self._tick_seconds)
        while True:
            try:
                await self.fire_due()
            except Exception as exc:
                logger.error("Schedule tick failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._tick_seconds)
