"""Workflow Execution Engine - FastAPI Application."""

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from app.config import Settings, get_settings
from app.dependencies import Services
from api.v1.router import api_v1_router
from core.exceptions import ConfigurationError
from core.logging_config import setup_logging
from core.metrics import MetricsMiddleware
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from notifications.dispatcher import NotificationDispatcher
from notifications.manager import NotificationManager
from triggers.base import TriggerEvent
from triggers.handlers.event_bus import create_event_bus
from triggers.manager import TriggerManager
from workflow.approval import ApprovalGate
from workflow.engine import WorkflowEngine
from workflow.executor import HandlerRegistry, HttpStepHandler, StepExecutor
from workflow.models import RunStatus, WorkflowRun
from workflow.registry import DefinitionRegistry
from workflow.retry_strategies import Sleep
from workflow.validator import load_definitions_dir

import structlog

logger = structlog.get_logger(__name__)


def build_services(
    settings: Settings,
    handlers: Optional[HandlerRegistry] = None,
    sleep: Sleep = asyncio.sleep,
) -> Services:
    """Wire registry, engine, triggers and notifications from settings."""
    notifications = NotificationManager()
    notifications.configure_channels(settings.notification_channel_config())

    dispatcher = NotificationDispatcher(
        notifications,
        escalation_channels=settings.escalation_channels_list,
        escalation_recipients=settings.escalation_recipients_list,
        max_delivery_attempts=settings.NOTIFICATION_MAX_DELIVERY_ATTEMPTS,
        retry_delay=settings.NOTIFICATION_RETRY_DELAY,
        sleep=sleep,
        max_records=settings.DISPATCH_RECORD_LIMIT,
    )

    if handlers is None:
        handlers = HandlerRegistry()
        if settings.STEP_HANDLER_URL:
            handlers.set_default(HttpStepHandler(settings.STEP_HANDLER_URL))

    on_run_complete = None
    if settings.RUN_FAILURE_ALERTS:
        on_run_complete = partial(_alert_run_failure, dispatcher=dispatcher)

    registry = DefinitionRegistry()
    engine = WorkflowEngine(
        registry=registry,
        executor=StepExecutor(handlers, default_timeout=settings.HANDLER_TIMEOUT_SECONDS, sleep=sleep),
        dispatcher=dispatcher,
        approval_gate=ApprovalGate(timeout_seconds=settings.APPROVAL_TIMEOUT_SECONDS),
        on_run_complete=on_run_complete,
        max_retained_runs=settings.RUN_RETENTION_LIMIT,
    )

    triggers = TriggerManager(
        event_bus=create_event_bus(settings.EVENT_BUS_BACKEND, settings.REDIS_URL),
        tick_seconds=settings.SCHEDULER_TICK_SECONDS,
    )
    triggers.set_event_callback(lambda event: _handle_trigger_event(event, engine))

    return Services(
        registry=registry,
        engine=engine,
        triggers=triggers,
        notifications=notifications,
        dispatcher=dispatcher,
    )


async def _alert_run_failure(run: WorkflowRun, dispatcher: NotificationDispatcher) -> None:
    """on_run_complete hook: one alert to the escalation recipients per failed run."""
    if run.status != RunStatus.FAILED:
        return
    await dispatcher.notify_run_failure(run.id, run.error or "unknown error", workflow_name=run.definition_id)


def _handle_trigger_event(event: TriggerEvent, engine: WorkflowEngine) -> str:
    """Bridge between TriggerManager and WorkflowEngine.

    Each firing allocates a pending run with an empty context and
    schedules it.

    Returns:
        run_id
    """
    run = engine.trigger_run(
        event.workflow_id,
        triggered_by=event.describe(),
        trigger_payload=event.payload,
    )
    return run.id


async def load_definitions(services: Services, path: str) -> int:
    """Register every definition in a directory and start its triggers.

    The directory is validated as a whole: one invalid file rejects the load.
    """
    definitions = load_definitions_dir(Path(path))
    for definition in definitions:
        services.registry.register(definition)
        for result in await services.triggers.register_definition(definition):
            if not result.success:
                logger.warning("Trigger failed to start", trigger_id=result.trigger_id, error=result.error)
    return len(definitions)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    services: Optional[Services] = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services

    if settings.DEFINITIONS_PATH:
        try:
            count = await load_definitions(services, settings.DEFINITIONS_PATH)
            logger.info("Workflow definitions loaded", count=count, path=settings.DEFINITIONS_PATH)
        except ConfigurationError as e:
            logger.error("Workflow definitions rejected", path=settings.DEFINITIONS_PATH, violations=e.violations)
            raise

    services.triggers.start()
    logger.info(
        "Workflow engine ready",
        workflows=len(services.registry),
        channels=services.notifications.get_status()["channels"],
        event_bus=settings.EVENT_BUS_BACKEND,
    )

    yield

    # Shutdown
    await services.triggers.shutdown()
    await services.engine.shutdown()
    logger.info("Application shutting down")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built services (tests); built from settings at startup otherwise
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Runs declarative multi-step, multi-agent workflow definitions "
                    "with conditions, retries, approvals and escalation.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Prometheus metrics middleware (outermost, sees every request)
    app.add_middleware(MetricsMiddleware)

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Global exception handlers
    setup_exception_handlers(app)

    # Versioned API under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
