"""Workflow definition schemas."""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any

from workflow.definition import WorkflowDefinition, dump_definition


class WorkflowSummary(BaseModel):
    """Registered workflow definition, without its steps."""

    id: str = Field(description="Definition ID")
    use_case_id: str = Field(description="Use case the workflow implements")
    name: str = Field(description="Workflow name")
    version: str = Field(description="Definition version")
    industry: Optional[str] = Field(default=None, description="Industry tag")
    step_count: int = Field(description="Number of steps")
    trigger_types: List[str] = Field(description="Trigger types declared by the definition")
    criticality: Optional[str] = Field(default=None, description="Declared criticality")

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "WorkflowSummary":
        return cls(
            id=definition.id,
            use_case_id=definition.use_case_id,
            name=definition.name,
            version=definition.version,
            industry=definition.industry,
            step_count=len(definition.steps),
            trigger_types=[t.type for t in definition.triggers],
            criticality=definition.metadata.criticality,
        )


class WorkflowListResponse(BaseModel):
    """List of registered workflows."""

    workflows: List[WorkflowSummary] = Field(description="Registered workflows")
    total: int = Field(description="Total number of workflows")


class WorkflowRegisterResponse(BaseModel):
    """Result of registering a definition."""

    workflow: WorkflowSummary
    replaced_version: Optional[str] = Field(default=None, description="Version replaced by this registration")
    triggers_started: int = Field(description="Triggers started for the definition")
    trigger_errors: List[str] = Field(default_factory=list, description="Triggers that failed to start")


def definition_document(definition: WorkflowDefinition) -> Dict[str, Any]:
    """Full definition in its wire format."""
    return dump_definition(definition)
