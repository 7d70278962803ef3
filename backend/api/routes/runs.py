"""Workflow run query, cancellation and approval decision endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
import logging

from api.schemas.run import (
    ApprovalResponse,
    DecisionRequest,
    RunListResponse,
    RunResponse,
)
from app.dependencies import get_engine
from workflow.engine import WorkflowEngine
from workflow.models import RunStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])
approvals_router = APIRouter(tags=["approvals"])


@router.get("", response_model=RunListResponse)
async def list_runs(
    run_status: Optional[RunStatus] = Query(None, alias="status", description="Filter by run status"),
    workflow_id: Optional[str] = Query(None, description="Filter by workflow ID"),
    limit: int = Query(100, ge=1, le=1000, description="Most recent runs to return"),
    engine: WorkflowEngine = Depends(get_engine),
) -> RunListResponse:
    """
    List workflow runs, most recent last.
    """
    runs = engine.list_runs(status=run_status, definition_id=workflow_id)
    total = len(runs)
    return RunListResponse(
        runs=[RunResponse.from_run(r) for r in runs[-limit:]],
        total=total,
    )


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> RunResponse:
    """
    Get a run with per-step status and its execution context.
    """
    run = engine.get_run(run_id)
    return RunResponse.from_run(run, context=engine.get_context(run_id).snapshot())


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> RunResponse:
    """
    Cancel a pending, running or suspended run.
    """
    run = await engine.cancel_run(run_id, reason="cancelled via API")
    return RunResponse.from_run(run)


@router.post("/{run_id}/steps/{step_id}/decision", response_model=RunResponse)
async def submit_decision(
    run_id: str,
    step_id: str,
    body: DecisionRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> RunResponse:
    """
    Approve or reject a step awaiting human approval.

    The run resumes in the background; the response shows the state at
    the time the decision was recorded.
    """
    run = engine.submit_decision(
        run_id,
        step_id,
        body.decision,
        comments=body.comments,
        outputs=body.outputs,
        decided_by=body.decided_by,
    )
    logger.info(f"Decision '{body.decision}' recorded for run {run_id} step {step_id}")
    return RunResponse.from_run(run)


@approvals_router.get("", response_model=list[ApprovalResponse])
async def list_pending_approvals(
    run_id: Optional[str] = Query(None, description="Only approvals of this run"),
    engine: WorkflowEngine = Depends(get_engine),
) -> list[ApprovalResponse]:
    """
    List steps currently awaiting a human decision.
    """
    return [ApprovalResponse.from_request(r) for r in engine.approval_gate.list_pending(run_id)]
