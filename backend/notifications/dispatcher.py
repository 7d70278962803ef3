"""Escalation & notification dispatcher.

Sits between the run scheduler and the NotificationManager. Every
dispatch carries an idempotency key derived from (kind, run_id,
step_id, attempt_count); a key that was already delivered is not sent
again, and delivery retries reuse the same key.

Delivery failures never propagate to the caller, including exceptions
raised by a channel: they are logged as NotificationDispatchError /
EscalationDispatchError and the run continues to its terminal state.

Only the most recent `max_records` outcomes are kept; an evicted key
can be delivered again.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core import metrics
from core.exceptions import EscalationDispatchError, NotificationDispatchError
from notifications.channels import DeliveryResult, NotificationPriority
from notifications.manager import NotificationManager
from workflow.retry_strategies import RetryStrategy, Sleep, execute_with_retry

logger = structlog.get_logger(__name__)


def dispatch_key(kind: str, run_id: str, step_id: str, attempt_count: int) -> str:
    return f"{kind}:{run_id}:{step_id}:{attempt_count}"


def run_failure_key(run_id: str) -> str:
    return f"run-failure:{run_id}"


@dataclass
class DispatchRecord:
    """Outcome of one idempotent dispatch."""
    key: str
    kind: str
    delivered: bool
    tries: int
    channels: list[str]
    recipients: list[str]
    errors: list[str] = field(default_factory=list)
    dispatched_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "kind": self.kind,
            "delivered": self.delivered,
            "tries": self.tries,
            "channels": self.channels,
            "recipients": self.recipients,
            "errors": self.errors,
            "dispatched_at": self.dispatched_at,
        }


class _DeliveryFailed(Exception):
    def __init__(self, results: list[DeliveryResult]):
        self.results = results
        super().__init__("; ".join(f"{r.channel}/{r.recipient or '-'}: {r.error}" for r in results))


class NotificationDispatcher:
    """Idempotent, retrying front-end for notifications and escalations."""

    def __init__(
        self,
        manager: NotificationManager,
        escalation_channels: Optional[list[str]] = None,
        escalation_recipients: Optional[list[str]] = None,
        max_delivery_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
        max_records: int = 10000,
    ):
        self._manager = manager
        self._escalation_channels = escalation_channels or ["email"]
        self._escalation_recipients = escalation_recipients or []
        self._strategy = RetryStrategy.fixed(
            max_retries=max(0, max_delivery_attempts - 1), delay=retry_delay
        )
        self._sleep = sleep
        self._max_records = max_records
        self._records: dict[str, DispatchRecord] = {}
        self._in_flight: dict[str, asyncio.Future] = {}

    @property
    def manager(self) -> NotificationManager:
        return self._manager

    def records(self, kind: Optional[str] = None) -> list[DispatchRecord]:
        return [r for r in self._records.values() if kind is None or r.kind == kind]

    def get_record(self, key: str) -> Optional[DispatchRecord]:
        return self._records.get(key)

    async def notify(
        self,
        channels: list[str],
        recipients: list[str],
        payload: dict[str, Any],
        key: str,
    ) -> DispatchRecord:
        """Deliver a notification once per key.

        Args:
            channels: Channel names (email, slack, teams, webhook, ...)
            recipients: Recipient identifiers, sent on every channel
            payload: {"title", "message", "priority"?, "metadata"?}
            key: Idempotency key
        """
        return await self._dispatch("notification", channels, recipients, payload, key)

    async def escalate(
        self,
        run_id: str,
        step_id: str,
        reason: str,
        attempt_count: int,
        workflow_name: str = "",
    ) -> DispatchRecord:
        """Raise an escalation for a step that exhausted its retries."""
        key = dispatch_key("escalation", run_id, step_id, attempt_count)
        label = workflow_name or run_id
        payload = {
            "title": f"Escalation: step '{step_id}' failed in {label}",
            "message": (
                f"Step '{step_id}' of run {run_id} failed after {attempt_count} attempt(s).\n"
                f"Reason: {reason}"
            ),
            "priority": NotificationPriority.CRITICAL,
            "metadata": {
                "run_id": run_id,
                "step_id": step_id,
                "attempts": attempt_count,
                "reason": reason,
            },
        }
        return await self._dispatch(
            "escalation",
            self._escalation_channels,
            self._escalation_recipients,
            payload,
            key,
        )

    async def notify_step_failure(
        self,
        run_id: str,
        step_id: str,
        reason: str,
        attempt_count: int,
        channels: list[str],
        recipients: list[str],
        workflow_name: str = "",
    ) -> DispatchRecord:
        """Send a step's own errorHandling.notification policy."""
        key = dispatch_key("notification", run_id, step_id, attempt_count)
        label = workflow_name or run_id
        payload = {
            "title": f"Workflow step failed: {step_id} ({label})",
            "message": f"Step '{step_id}' of run {run_id} failed after {attempt_count} attempt(s): {reason}",
            "priority": NotificationPriority.HIGH,
            "metadata": {"run_id": run_id, "step_id": step_id, "attempts": attempt_count},
        }
        return await self.notify(channels, recipients, payload, key)

    async def notify_run_failure(
        self,
        run_id: str,
        reason: str,
        workflow_name: str = "",
    ) -> DispatchRecord:
        """Alert the escalation recipients that a run ended failed. Sent once per run."""
        label = workflow_name or run_id
        payload = {
            "title": f"Workflow run failed: {label}",
            "message": f"Run {run_id} of {label} failed.\nReason: {reason}",
            "priority": NotificationPriority.HIGH,
            "metadata": {"run_id": run_id, "workflow": label, "reason": reason},
        }
        return await self._dispatch(
            "run_failure",
            self._escalation_channels,
            self._escalation_recipients,
            payload,
            run_failure_key(run_id),
        )

    def _remember(self, record: DispatchRecord) -> None:
        self._records[record.key] = record
        while len(self._records) > self._max_records:
            # dicts keep insertion order: drop the oldest outcome
            self._records.pop(next(iter(self._records)))

    async def _dispatch(
        self,
        kind: str,
        channels: list[str],
        recipients: list[str],
        payload: dict[str, Any],
        key: str,
    ) -> DispatchRecord:
        existing = self._records.get(key)
        if existing is not None:
            logger.info("Duplicate dispatch suppressed", kind=kind, key=key)
            metrics.inc("dispatch_duplicates_total", labels={"kind": kind})
            return existing

        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            record = await self._deliver(kind, channels, recipients, payload, key)
            self._remember(record)
            future.set_result(record)
            return record
        except BaseException:
            future.cancel()
            raise
        finally:
            self._in_flight.pop(key, None)

    async def _deliver(
        self,
        kind: str,
        channels: list[str],
        recipients: list[str],
        payload: dict[str, Any],
        key: str,
    ) -> DispatchRecord:
        tries = 0
        errors: list[str] = []

        # Only targets that failed are retried
        remaining = [(ch, r) for ch in channels for r in (recipients or [""])]

        async def _attempt() -> None:
            nonlocal tries, remaining
            tries += 1
            failed = []
            failed_results = []
            for ch, recipient in remaining:
                try:
                    [result] = await self._manager.send_multi(
                        title=payload.get("title", ""),
                        message=payload.get("message", ""),
                        channels=[ch],
                        recipients=[recipient] if recipient else None,
                        priority=payload.get("priority", NotificationPriority.NORMAL),
                        metadata=payload.get("metadata"),
                        idempotency_key=key,
                    )
                except Exception as exc:
                    logger.warning("Channel raised during delivery", kind=kind, key=key, channel=ch, error=str(exc))
                    result = DeliveryResult(
                        success=False,
                        channel=ch,
                        recipient=recipient,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                if not result.success:
                    failed.append((ch, recipient))
                    failed_results.append(result)
            remaining = failed
            if failed_results:
                raise _DeliveryFailed(failed_results)

        def _log_retry(retry: int, error: Exception, delay: float) -> None:
            errors.append(str(error))
            logger.info("Retrying dispatch", kind=kind, key=key, retry=retry, delay_seconds=delay, error=str(error))

        delivered = True
        try:
            await execute_with_retry(
                _attempt,
                self._strategy,
                on_retry=_log_retry,
                sleep=self._sleep,
                retry_on=(_DeliveryFailed,),
            )
        except _DeliveryFailed as e:
            delivered = False
            errors.append(str(e))
            error_cls = EscalationDispatchError if kind == "escalation" else NotificationDispatchError
            err = error_cls(f"{kind} delivery failed after {tries} tries: {e}", key=key)
            logger.error(
                "Dispatch failed",
                kind=kind,
                key=key,
                tries=tries,
                error=err.message,
                error_code=err.error_code,
            )

        metrics.inc(
            "dispatches_total",
            labels={"kind": kind, "outcome": "delivered" if delivered else "failed"},
        )
        if delivered:
            logger.info("Dispatch delivered", kind=kind, key=key, tries=tries, channels=channels)

        return DispatchRecord(
            key=key,
            kind=kind,
            delivered=delivered,
            tries=tries,
            channels=list(channels),
            recipients=list(recipients),
            errors=errors,
        )
