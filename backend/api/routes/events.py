"""Trigger input endpoints: named events, metric samples, trigger status."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
import logging

from api.schemas.common import (
    EventPublishResponse,
    MetricSample,
    MetricSampleResponse,
    TriggerStatusResponse,
)
from app.dependencies import get_triggers
from core import metrics
from triggers.manager import TriggerManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["triggers"])


@router.post("/events/{name}", response_model=EventPublishResponse, status_code=202)
async def publish_event(
    name: str,
    payload: Optional[dict[str, Any]] = Body(None),
    triggers: TriggerManager = Depends(get_triggers),
) -> EventPublishResponse:
    """
    Publish a named event; every event trigger subscribed to it starts a run.
    """
    delivered = await triggers.publish_event(name, payload or {})
    metrics.inc("events_received_total", labels={"event": name})
    return EventPublishResponse(event=name, delivered=delivered)


@router.post("/metric-samples", response_model=MetricSampleResponse, status_code=202)
async def observe_metric(
    sample: MetricSample,
    triggers: TriggerManager = Depends(get_triggers),
) -> MetricSampleResponse:
    """
    Feed one metric sample to threshold triggers.
    """
    fired = await triggers.observe_metric(sample.metric, sample.value)
    return MetricSampleResponse(metric=sample.metric, value=sample.value, fired_triggers=fired)


@router.get("/triggers", response_model=TriggerStatusResponse)
async def trigger_status(triggers: TriggerManager = Depends(get_triggers)) -> TriggerStatusResponse:
    """
    Active triggers and how often each has fired.
    """
    return TriggerStatusResponse(**triggers.get_status())
