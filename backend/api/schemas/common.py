"""Common schemas used across the API."""

from pydantic import BaseModel, Field
from typing import Any


class EventPublishResponse(BaseModel):
    """Result of publishing a named event."""

    event: str
    delivered: int = Field(description="Number of subscribers the bus delivered to")


class MetricSample(BaseModel):
    """One sample of the metric stream."""

    metric: str = Field(min_length=1)
    value: float


class MetricSampleResponse(BaseModel):
    """Triggers fired by a metric sample."""

    metric: str
    value: float
    fired_triggers: list[str]


class TriggerStatusResponse(BaseModel):
    initialized: bool
    registered_handlers: list[str]
    active_triggers: int
    triggers: dict[str, dict[str, Any]]
