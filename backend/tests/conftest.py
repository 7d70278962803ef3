"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Scripted step handlers (no external agents needed)
- A recording sleep so retry delays are asserted, not waited for
- A recording notification channel
- Definition builders
- Fully wired engine / services and a FastAPI test client (httpx.AsyncClient)
"""

import asyncio
import os
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("EVENT_BUS_BACKEND", "memory")
os.environ.setdefault("DEFINITIONS_PATH", "")

from app.config import Settings  # noqa: E402
from core import metrics  # noqa: E402
from notifications.channels import BaseChannel, DeliveryResult, Notification  # noqa: E402
from workflow.executor import HandlerRegistry, HandlerRequest, StepHandler  # noqa: E402
from workflow.validator import load_definition  # noqa: E402


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class ScriptedHandler(StepHandler):
    """Step handler whose responses are scripted per action.

    A response is an outputs dict, an exception instance (raised), or a
    callable taking the HandlerRequest. The last response of a script
    repeats forever.
    """

    def __init__(self):
        self.calls: list[HandlerRequest] = []
        self._scripts: dict[str, list[Any]] = {}

    def script(self, action: str, *responses: Any) -> "ScriptedHandler":
        self._scripts[action] = list(responses)
        return self

    def actions(self) -> list[str]:
        return [c.action for c in self.calls]

    def calls_for(self, action: str) -> list[HandlerRequest]:
        return [c for c in self.calls if c.action == action]

    async def invoke(self, request: HandlerRequest) -> Optional[dict[str, Any]]:
        self.calls.append(request)
        responses = self._scripts.get(request.action)
        if not responses:
            return {}
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(request)
            if asyncio.iscoroutine(response):
                response = await response
        return response


class RecordingSleep:
    """Stands in for asyncio.sleep; records every requested delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class RecordingChannel(BaseChannel):
    """Notification channel that records deliveries and can fail on demand."""

    def __init__(self, channel_type: str = "email", fail_times: int = 0):
        self.channel_type = channel_type
        self.fail_times = fail_times
        self.sent: list[Notification] = []
        self.attempts = 0

    async def send(self, notification: Notification) -> DeliveryResult:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error="channel unavailable",
            )
        self.sent.append(notification)
        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=notification.recipient,
            message="recorded",
        )


class ExplodingChannel(BaseChannel):
    """Channel whose transport raises instead of returning a failed result."""

    def __init__(self, channel_type: str):
        self.channel_type = channel_type
        self.attempts = 0

    async def send(self, notification: Notification) -> DeliveryResult:
        self.attempts += 1
        raise RuntimeError("transport exploded")


# ---------------------------------------------------------------------------
# Definition builders
# ---------------------------------------------------------------------------

def _step(step_id: str, action: Optional[str] = None, **fields: Any) -> dict:
    step = {
        "id": step_id,
        "name": step_id.replace("-", " ").title(),
        "type": fields.pop("type", "execute"),
        "agent": fields.pop("agent", "test-agent"),
        "service": fields.pop("service", "test-service"),
        "action": action or step_id,
    }
    step.update(fields)
    return step


def _definition_payload(steps: list[dict], triggers: Optional[list[dict]] = None, **fields: Any) -> dict:
    payload = {
        "id": fields.pop("id", "test-workflow"),
        "useCaseId": fields.pop("use_case_id", "test-use-case"),
        "name": fields.pop("name", "Test Workflow"),
        "version": fields.pop("version", "1.0.0"),
        "triggers": triggers if triggers is not None else [{"type": "manual"}],
        "steps": steps,
    }
    payload.update(fields)
    return payload


@pytest.fixture
def make_step():
    """Factory for a step dict in wire format."""
    return _step


@pytest.fixture
def definition_payload():
    """Factory for a definition dict in wire format."""
    return _definition_payload


@pytest.fixture
def make_definition():
    """Factory for a validated WorkflowDefinition."""

    def _make(steps: list[dict], triggers: Optional[list[dict]] = None, **fields: Any):
        return load_definition(_definition_payload(steps, triggers, **fields))

    return _make


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    """Every test starts from empty counters."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def handler() -> ScriptedHandler:
    return ScriptedHandler()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def email_channel() -> RecordingChannel:
    return RecordingChannel("email")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        DEFINITIONS_PATH="",
        EVENT_BUS_BACKEND="memory",
        ESCALATION_CHANNELS="email",
        ESCALATION_RECIPIENTS="oncall@example.com",
        NOTIFICATION_MAX_DELIVERY_ATTEMPTS=3,
        NOTIFICATION_RETRY_DELAY=1.0,
        SMTP_HOST="",
        SLACK_WEBHOOK_URL="",
        TEAMS_WEBHOOK_URL="",
        NOTIFICATION_WEBHOOK_URL="",
    )


@pytest_asyncio.fixture
async def services(settings, handler, recording_sleep, email_channel):
    """Registry, engine, triggers and notifications wired like the app does."""
    from app.main import build_services

    handlers = HandlerRegistry(default=handler)
    wired = build_services(settings, handlers=handlers, sleep=recording_sleep)
    wired.notifications.register_channel(email_channel)

    yield wired

    await wired.triggers.shutdown()
    await wired.engine.shutdown()


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(services):
    """A FastAPI app instance using the test services."""
    from app.main import create_app

    return create_app(services=services)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
