"""Workflow run, step run and approval schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from workflow.approval import ApprovalRequest
from workflow.models import StepRun, WorkflowRun


class RunCreate(BaseModel):
    """Request to start a workflow run manually."""

    payload: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload recorded on the run")
    triggered_by: Optional[str] = Field(default=None, description="Who or what started the run")


class StepRunResponse(BaseModel):
    """Per-step execution record."""

    step_id: str
    status: str
    attempts: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_error: Optional[str] = None
    skip_reason: Optional[str] = None
    fallback_step_id: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    approval: Optional[Dict[str, Any]] = None

    @classmethod
    def from_step_run(cls, step_run: StepRun) -> "StepRunResponse":
        return cls(
            step_id=step_run.step_id,
            status=step_run.status.value,
            attempts=step_run.attempts,
            started_at=step_run.started_at,
            completed_at=step_run.completed_at,
            duration_ms=step_run.duration_ms,
            last_error=step_run.last_error,
            skip_reason=step_run.skip_reason,
            fallback_step_id=step_run.fallback_step_id,
            outputs=step_run.outputs,
            approval=step_run.approval,
        )


class RunResponse(BaseModel):
    """Workflow run with per-step status."""

    id: str = Field(description="Run ID")
    definition_id: str = Field(description="Workflow definition ID")
    definition_version: Optional[str] = None
    status: str = Field(description="pending, running, awaiting_approval, completed, failed, cancelled")
    triggered_by: Dict[str, Any] = Field(default_factory=dict)
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    current_step_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[StepRunResponse] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = Field(default=None, description="Execution context values (detail view only)")

    @classmethod
    def from_run(cls, run: WorkflowRun, context: Optional[Dict[str, Any]] = None) -> "RunResponse":
        return cls(
            id=run.id,
            definition_id=run.definition_id,
            definition_version=run.definition_version,
            status=run.status.value,
            triggered_by=run.triggered_by,
            trigger_payload=run.trigger_payload,
            current_step_id=run.current_step_id,
            error=run.error,
            created_at=run.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            steps=[StepRunResponse.from_step_run(s) for s in run.steps],
            context=context,
        )


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class DecisionRequest(BaseModel):
    """An approver's decision on a suspended step."""

    decision: Literal["approve", "reject"]
    comments: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Outputs supplied by the approver")
    decided_by: Optional[str] = None


class ApprovalResponse(BaseModel):
    """A pending approval."""

    run_id: str
    step_id: str
    definition_id: str
    step_name: str
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: ApprovalRequest) -> "ApprovalResponse":
        return cls(
            run_id=request.run_id,
            step_id=request.step_id,
            definition_id=request.definition_id,
            step_name=request.step_name,
            action=request.action,
            parameters=request.parameters,
            requested_at=request.requested_at,
            expires_at=request.expires_at,
        )
