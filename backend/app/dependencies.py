"""FastAPI dependency injection functions."""

from dataclasses import dataclass

from fastapi import Depends, Request

from notifications.dispatcher import NotificationDispatcher
from notifications.manager import NotificationManager
from triggers.manager import TriggerManager
from workflow.engine import WorkflowEngine
from workflow.registry import DefinitionRegistry


@dataclass
class Services:
    """Everything the API needs, built once at application startup."""

    registry: DefinitionRegistry
    engine: WorkflowEngine
    triggers: TriggerManager
    notifications: NotificationManager
    dispatcher: NotificationDispatcher


def get_services(request: Request) -> Services:
    """Services wired in the application lifespan (or injected by create_app)."""
    return request.app.state.services


def get_engine(services: Services = Depends(get_services)) -> WorkflowEngine:
    return services.engine


def get_registry(services: Services = Depends(get_services)) -> DefinitionRegistry:
    return services.registry


def get_triggers(services: Services = Depends(get_services)) -> TriggerManager:
    return services.triggers
