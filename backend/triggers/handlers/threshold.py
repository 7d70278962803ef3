"""Threshold trigger handler.

Threshold triggers watch a metric stream. Every observed sample is
compared against the trigger's (operator, value); the trigger fires on
each crossing, i.e. when the comparison goes from not satisfied to
satisfied. There is no debounce: a metric that oscillates around the
threshold starts a run on every upward crossing.
"""

import logging
from typing import Any, Optional

from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum
from workflow.conditions import compare
from workflow.definition import COMPARISON_OPERATORS, ConditionOperator

logger = logging.getLogger(__name__)


class ThresholdTriggerHandler(BaseTriggerHandler):
    """Handler for metric threshold triggers.

    Config schema:
        {
            "metric": "inventory.stock_level",
            "operator": "<",
            "value": 10
        }
    """

    trigger_type = TriggerTypeEnum.THRESHOLD

    def __init__(self):
        super().__init__()
        self._satisfied: dict[str, bool] = {}
        self._last_values: dict[str, float] = {}

    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        is_valid, error = self.validate_config(config)
        if not is_valid:
            return self._invalid(trigger_id, error)

        self._active[trigger_id] = config
        self._satisfied[trigger_id] = False
        logger.info(
            "Watching metric %s %s %s for trigger %s",
            config["metric"],
            config["operator"],
            config["value"],
            trigger_id,
        )
        return TriggerResult(
            success=True,
            message=f"Watching {config['metric']} {config['operator']} {config['value']}",
            trigger_id=trigger_id,
        )

    async def stop(self, trigger_id: str) -> TriggerResult:
        config = self._active.pop(trigger_id, None)
        self._satisfied.pop(trigger_id, None)
        if config and config["metric"] not in self.watched_metrics():
            self._last_values.pop(config["metric"], None)
        return TriggerResult(success=True, message="Threshold watch removed", trigger_id=trigger_id)

    def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        if not isinstance(config, dict):
            return False, "Config must be a dict"
        if not config.get("metric"):
            return False, "Missing required field: metric"
        try:
            operator = ConditionOperator(config.get("operator"))
        except ValueError:
            return False, f"Unknown operator: {config.get('operator')!r}"
        if operator not in COMPARISON_OPERATORS:
            return False, f"Operator '{operator.value}' is not a comparison operator"
        value = config.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False, "Threshold value must be a number"
        return True, None

    def watched_metrics(self) -> set[str]:
        return {config["metric"] for config in self._active.values()}

    def last_value(self, metric: str) -> Optional[float]:
        return self._last_values.get(metric)

    async def observe(self, metric: str, value: Any) -> list[str]:
        """Feed one metric sample.

        Returns:
            IDs of the triggers that crossed their threshold on this sample
        """
        # only watched metrics are remembered
        if metric in self.watched_metrics():
            self._last_values[metric] = value
        fired = []
        for trigger_id, config in list(self._active.items()):
            if config["metric"] != metric:
                continue

            satisfied = compare(value, ConditionOperator(config["operator"]), config["value"])
            was_satisfied = self._satisfied.get(trigger_id, False)
            self._satisfied[trigger_id] = satisfied
            if not satisfied or was_satisfied:
                continue

            logger.info(
                "Threshold crossed: %s=%s %s %s (trigger %s)",
                metric,
                value,
                config["operator"],
                config["value"],
                trigger_id,
            )
            try:
                await self._fire(trigger_id, {
                    "metric": metric,
                    "value": value,
                    "operator": config["operator"],
                    "threshold": config["value"],
                })
                fired.append(trigger_id)
            except Exception as exc:
                logger.error("Failed to fire threshold trigger %s: %s", trigger_id, exc)
        return fired

