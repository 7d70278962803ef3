"""Workflow definition schema.

A workflow definition is externally loaded, schema-validated data
(JSON, camelCase keys):

{
    "id": "inventory-optimization-workflow",
    "useCaseId": "inventory-optimization",
    "name": "Inventory Optimization Workflow",
    "version": "1.0.0",
    "triggers": [
        {"type": "scheduled", "schedule": "0 */6 * * *"},
        {"type": "event", "event": "inventory.reorder.point", "filter": {"quantity_lt": 20}},
        {"type": "threshold", "threshold": {"metric": "stock.level", "operator": "<", "value": 10}}
    ],
    "steps": [
        {
            "id": "analyze-sales-data",
            "name": "Analyze Sales Data",
            "type": "detect",
            "agent": "monitoring",
            "service": "inventory-optimization",
            "action": "analyzeSalesData",
            "parameters": {"period": "30d"},
            "outputs": ["salesAnalysis", "trends"],
            "errorHandling": {"retry": {"attempts": 3, "delay": 5000}}
        },
        {
            "id": "generate-orders",
            "type": "execute",
            ...
            "conditions": [{"field": "analyze-sales-data.trends.rising", "operator": "=", "value": true}],
            "humanApprovalRequired": true,
            "errorHandling": {
                "notification": {"recipients": ["ops@company.com"], "channels": ["email"]},
                "fallback": "manual-ordering"
            }
        }
    ],
    "metadata": {"requiredServices": [...], "requiredAgents": [...], "criticality": "high"}
}

All models are frozen: a definition is read-only once validated.
Semantic checks (unique ids, path syntax, ...) live in workflow.validator.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    """Kind of work a step performs."""
    DETECT = "detect"
    ANALYZE = "analyze"
    DECIDE = "decide"
    EXECUTE = "execute"
    VERIFY = "verify"
    REPORT = "report"


class ConditionOperator(str, Enum):
    """Comparison operators usable in step conditions and threshold triggers."""
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"


COMPARISON_OPERATORS = frozenset({
    ConditionOperator.EQ,
    ConditionOperator.NE,
    ConditionOperator.GT,
    ConditionOperator.LT,
    ConditionOperator.GE,
    ConditionOperator.LE,
})


class DefinitionModel(BaseModel):
    """Base for all definition models: frozen, camelCase on the wire.

    Unrecognized keys are kept (and dumped back) but have no effect;
    the validator logs them.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
        extra="allow",
    )


# ─── Triggers ─────────────────────────────────────────────────

class EventTrigger(DefinitionModel):
    type: Literal["event"] = "event"
    event: str = Field(min_length=1)
    filter: Optional[dict[str, Any]] = Field(
        default=None,
        description="Payload filter: {\"status\": \"paid\"}, {\"amount_gt\": 100}, {\"tags_contains\": \"urgent\"}",
    )


class ScheduledTrigger(DefinitionModel):
    type: Literal["scheduled"] = "scheduled"
    schedule: str = Field(min_length=1, description="Cron expression (5 or 6 fields)")


class ThresholdSpec(DefinitionModel):
    metric: str = Field(min_length=1)
    operator: ConditionOperator
    value: float


class ThresholdTrigger(DefinitionModel):
    type: Literal["threshold"] = "threshold"
    threshold: ThresholdSpec


class ManualTrigger(DefinitionModel):
    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[EventTrigger, ScheduledTrigger, ThresholdTrigger, ManualTrigger],
    Field(discriminator="type"),
]


# ─── Steps ────────────────────────────────────────────────────

class Condition(DefinitionModel):
    field: str = Field(min_length=1, description="Dot path into the execution context")
    operator: ConditionOperator
    value: Any = None


class RetryPolicy(DefinitionModel):
    attempts: int = 0
    delay: int = Field(
        default=0,
        validation_alias=AliasChoices("delay", "delayMs", "delay_ms"),
        description="Fixed delay between attempts, in milliseconds",
    )

    @property
    def delay_seconds(self) -> float:
        return self.delay / 1000.0


class NotificationPolicy(DefinitionModel):
    recipients: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)


class ErrorHandlingPolicy(DefinitionModel):
    retry: Optional[RetryPolicy] = None
    escalate: Optional[bool] = None
    notification: Optional[NotificationPolicy] = None
    fallback: Optional[str] = None

    @property
    def max_retries(self) -> int:
        return self.retry.attempts if self.retry else 0


class Step(DefinitionModel):
    id: str = Field(min_length=1)
    name: str = ""
    type: StepType
    agent: str = ""
    service: str = ""
    action: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)
    conditions: Optional[list[Condition]] = None
    human_approval_required: bool = False
    error_handling: ErrorHandlingPolicy = Field(default_factory=ErrorHandlingPolicy)
    timeout: Optional[int] = Field(default=None, description="Handler timeout in milliseconds")


# ─── Definition ───────────────────────────────────────────────

class DefinitionMetadata(DefinitionModel):
    """Free-form: keys beyond the declared ones are expected."""

    required_services: list[str] = Field(default_factory=list)
    required_agents: list[str] = Field(default_factory=list)
    criticality: Optional[str] = None
    compliance: list[str] = Field(default_factory=list)
    estimated_duration: Optional[int] = None
    tags: list[str] = Field(default_factory=list)


class WorkflowDefinition(DefinitionModel):
    id: str = Field(min_length=1)
    use_case_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: Optional[str] = None
    industry: Optional[str] = None
    steps: list[Step]
    triggers: list[Trigger]
    metadata: DefinitionMetadata = Field(default_factory=DefinitionMetadata)

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]


def dump_definition(definition: WorkflowDefinition) -> dict:
    """Serialize a definition to its JSON wire format (camelCase, no nulls)."""
    return definition.model_dump(mode="json", by_alias=True, exclude_none=True)
