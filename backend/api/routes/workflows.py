"""Workflow definition endpoints: list, register, get, unregister, start a run."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, status
import logging

from api.schemas.run import RunCreate, RunResponse
from api.schemas.workflow import (
    WorkflowListResponse,
    WorkflowRegisterResponse,
    WorkflowSummary,
    definition_document,
)
from app.dependencies import Services, get_services
from workflow.validator import load_definition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(
    use_case_id: Optional[str] = Query(None, description="Filter by use case ID"),
    services: Services = Depends(get_services),
) -> WorkflowListResponse:
    """
    List registered workflow definitions.
    """
    if use_case_id:
        definitions = services.registry.find_by_use_case(use_case_id)
    else:
        definitions = services.registry.list_all()
    return WorkflowListResponse(
        workflows=[WorkflowSummary.from_definition(d) for d in definitions],
        total=len(definitions),
    )


@router.post("", response_model=WorkflowRegisterResponse, status_code=status.HTTP_201_CREATED)
async def register_workflow(
    payload: dict[str, Any] = Body(..., description="Workflow definition (camelCase JSON)"),
    services: Services = Depends(get_services),
) -> WorkflowRegisterResponse:
    """
    Validate and register a workflow definition, then start its triggers.

    An invalid definition is rejected wholesale with 422 and the full
    list of violations.
    """
    definition = load_definition(payload, source="api")
    previous = services.registry.register(definition)
    results = await services.triggers.register_definition(definition)

    logger.info(f"Workflow registered via API: {definition.id} v{definition.version}")
    return WorkflowRegisterResponse(
        workflow=WorkflowSummary.from_definition(definition),
        replaced_version=previous.version if previous else None,
        triggers_started=sum(1 for r in results if r.success),
        trigger_errors=[f"{r.trigger_id}: {r.error or r.message}" for r in results if not r.success],
    )


@router.get("/{workflow_id}", response_model=dict[str, Any])
async def get_workflow(
    workflow_id: str,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """
    Get a workflow definition in its wire format.
    """
    return definition_document(services.registry.get(workflow_id))


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_workflow(
    workflow_id: str,
    services: Services = Depends(get_services),
) -> None:
    """
    Remove a workflow definition and stop its triggers. Existing runs continue.
    """
    services.registry.unregister(workflow_id)
    await services.triggers.unregister_definition(workflow_id)
    logger.info(f"Workflow unregistered via API: {workflow_id}")


@router.post("/{workflow_id}/runs", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    workflow_id: str,
    body: Optional[RunCreate] = None,
    services: Services = Depends(get_services),
) -> RunResponse:
    """
    Start a run of a workflow manually. The run proceeds in the background;
    poll GET /runs/{id} for progress.
    """
    body = body or RunCreate()
    triggered_by = {"type": "manual"}
    if body.triggered_by:
        triggered_by["by"] = body.triggered_by
    run = services.engine.trigger_run(workflow_id, triggered_by=triggered_by, trigger_payload=body.payload)
    return RunResponse.from_run(run)
