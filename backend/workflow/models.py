"""Run-time state: WorkflowRun and StepRun.

A WorkflowRun is created by the Trigger Evaluator (or the manual-start
API), mutated only by the Run Scheduler, and reaches a terminal state
(completed / failed / cancelled) exactly once.

State machine:

    pending -> running -> completed | failed | cancelled
                  ^  |
                  |  v
            awaiting_approval  (-> failed | cancelled)
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from core.exceptions import InvalidRunStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Status of a whole workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.AWAITING_APPROVAL,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    }),
    RunStatus.AWAITING_APPROVAL: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class StepRunStatus(str, Enum):
    """Status of a single step within a run."""
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"

    @property
    def is_terminal(self) -> bool:
        return self in (StepRunStatus.SKIPPED, StepRunStatus.SUCCEEDED, StepRunStatus.FAILED)


@dataclass
class StepRun:
    """Execution record of one step in one run."""
    step_id: str
    status: StepRunStatus = StepRunStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    skip_reason: Optional[str] = None
    outputs: dict[str, Any] = field(default_factory=dict)
    fallback_step_id: Optional[str] = None
    approval: Optional[dict[str, Any]] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None


@dataclass
class WorkflowRun:
    """One execution of a WorkflowDefinition."""
    definition_id: str
    step_ids: list[str]
    triggered_by: dict[str, Any] = field(default_factory=dict)
    trigger_payload: dict[str, Any] = field(default_factory=dict)
    definition_version: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.PENDING
    steps: list[StepRun] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step_id: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.steps:
            self.steps = [StepRun(step_id=sid) for sid in self.step_ids]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, step_id: str) -> StepRun:
        for step_run in self.steps:
            if step_run.step_id == step_id:
                return step_run
        raise KeyError(step_id)

    def transition(self, new_status: RunStatus, error: Optional[str] = None) -> None:
        """Move to a new status, enforcing the state machine."""
        if new_status == self.status:
            return
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidRunStateError(
                f"Run {self.id}: cannot transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        now = utcnow()
        if new_status == RunStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if new_status.is_terminal:
            self.completed_at = now
            self.current_step_id = None
            if error:
                self.error = error
