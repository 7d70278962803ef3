"""Approval Gate: human-in-the-loop suspension of a run.

A step with humanApprovalRequired suspends its run before the handler
is invoked. Suspension is a stored ApprovalRequest; no task waits on
it. A decision (approve / reject) arrives through submit_decision and
is handed to the run scheduler through the on_decision callback, which
resumes the run from the gated step.

Requests can optionally expire: after timeout_seconds an undecided
request is rejected with reason "timeout".
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from core.exceptions import ApprovalNotPendingError
from workflow.models import utcnow

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "timeout"
SYSTEM_DECIDER = "system"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class ApprovalRequest:
    """A pending (or decided) approval for one step of one run."""
    run_id: str
    step_id: str
    definition_id: str
    step_name: str = ""
    action: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    decision: Optional[ApprovalDecision] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    comments: Optional[str] = None
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return self.decision is None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "definition_id": self.definition_id,
            "step_name": self.step_name,
            "action": self.action,
            "parameters": self.parameters,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "decision": self.decision.value if self.decision else None,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decided_by": self.decided_by,
            "comments": self.comments,
        }


DecisionCallback = Callable[[ApprovalRequest], None]


class ApprovalGate:
    """Stores pending approvals and routes decisions back to the scheduler."""

    def __init__(self, timeout_seconds: float = 0.0, on_decision: Optional[DecisionCallback] = None):
        self._timeout = timeout_seconds
        self._on_decision = on_decision
        self._pending: dict[tuple[str, str], ApprovalRequest] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}

    def set_decision_callback(self, callback: DecisionCallback) -> None:
        self._on_decision = callback

    def open(self, request: ApprovalRequest) -> ApprovalRequest:
        """Record a new pending approval and arm its expiry timer."""
        key = (request.run_id, request.step_id)
        self._pending[key] = request
        if self._timeout > 0:
            request.expires_at = request.requested_at + timedelta(seconds=self._timeout)
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(self._timeout, self._expire, request.run_id, request.step_id)
        logger.info(
            "Approval requested",
            run_id=request.run_id,
            step_id=request.step_id,
            expires_at=request.expires_at.isoformat() if request.expires_at else None,
        )
        return request

    def get(self, run_id: str, step_id: str) -> Optional[ApprovalRequest]:
        return self._pending.get((run_id, step_id))

    def list_pending(self, run_id: Optional[str] = None) -> list[ApprovalRequest]:
        return sorted(
            (r for r in self._pending.values() if run_id is None or r.run_id == run_id),
            key=lambda r: r.requested_at,
        )

    def submit_decision(
        self,
        run_id: str,
        step_id: str,
        decision: ApprovalDecision,
        comments: Optional[str] = None,
        outputs: Optional[dict[str, Any]] = None,
        decided_by: Optional[str] = None,
    ) -> ApprovalRequest:
        """Decide a pending approval and hand it to the scheduler.

        Raises:
            ApprovalNotPendingError: no pending approval for (run_id, step_id)
        """
        key = (run_id, step_id)
        request = self._pending.pop(key, None)
        if request is None:
            raise ApprovalNotPendingError(run_id, step_id)
        self._cancel_timer(key)

        request.decision = ApprovalDecision(decision)
        request.decided_at = utcnow()
        request.decided_by = decided_by
        request.comments = comments
        request.outputs = dict(outputs or {})

        logger.info(
            "Approval decided",
            run_id=run_id,
            step_id=step_id,
            decision=request.decision.value,
            decided_by=decided_by,
        )
        if self._on_decision is not None:
            self._on_decision(request)
        return request

    def discard(self, run_id: str) -> list[ApprovalRequest]:
        """Drop every pending approval of a run (used on cancel)."""
        dropped = [r for k, r in self._pending.items() if k[0] == run_id]
        for request in dropped:
            key = (request.run_id, request.step_id)
            self._pending.pop(key, None)
            self._cancel_timer(key)
        return dropped

    def _cancel_timer(self, key: tuple[str, str]) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _expire(self, run_id: str, step_id: str) -> None:
        self._timers.pop((run_id, step_id), None)
        if (run_id, step_id) not in self._pending:
            return
        logger.warning("Approval expired", run_id=run_id, step_id=step_id, timeout_seconds=self._timeout)
        self.submit_decision(run_id, step_id, ApprovalDecision.REJECT, comments=TIMEOUT_REASON, decided_by=SYSTEM_DECIDER)

    def __len__(self) -> int:
        return len(self._pending)
