"""Manual trigger handler.

Manual triggers never fire by themselves: runs of a manually
triggered workflow start through POST /workflows/{id}/runs.
"""

from triggers.base import BaseTriggerHandler, TriggerResult, TriggerTypeEnum


class ManualTriggerHandler(BaseTriggerHandler):
    """Records manual triggers so they appear in the trigger status."""

    trigger_type = TriggerTypeEnum.MANUAL

    async def start(self, trigger_id: str, config: dict) -> TriggerResult:
        self._active[trigger_id] = config or {}
        return TriggerResult(success=True, message="Manual trigger registered", trigger_id=trigger_id)

    async def stop(self, trigger_id: str) -> TriggerResult:
        self._active.pop(trigger_id, None)
        return TriggerResult(success=True, message="Manual trigger removed", trigger_id=trigger_id)
