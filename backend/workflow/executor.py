"""Step Executor + Retry/Backoff Controller.

Invokes the external agent/service handler for one step and captures
its outputs. This module never implements step business logic: the
handler is an external collaborator looked up in a HandlerRegistry.

Contract:
    invoke(agent, service, action, parameters, context) -> outputs | Error

A call that does not return within the step's timeout is an error.
Errors are retried with a fixed delay up to errorHandling.retry.attempts
times, so a step is invoked at most attempts + 1 times.
"""

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from core import metrics
from core.exceptions import HandlerInvocationError, HandlerTimeoutError
from workflow.context import ExecutionContext
from workflow.definition import Step
from workflow.retry_strategies import RetryStrategy, Sleep, execute_with_retry

logger = structlog.get_logger(__name__)


# ─── Handler interface ────────────────────────────────────────

@dataclass(frozen=True)
class HandlerRequest:
    """Everything a handler receives for one invocation."""
    run_id: str
    step_id: str
    agent: str
    service: str
    action: str
    parameters: dict[str, Any]
    context: dict[str, dict[str, Any]]
    attempt: int = 1


class StepHandler(ABC):
    """An external agent/service able to perform step actions."""

    @abstractmethod
    async def invoke(self, request: HandlerRequest) -> Optional[dict[str, Any]]:
        """Perform the action and return its outputs (or {"outputs": {...}})."""
        ...


class CallableHandler(StepHandler):
    """Adapts a plain async function into a StepHandler."""

    def __init__(self, func: Callable[[HandlerRequest], Awaitable[Optional[dict]]]):
        self._func = func

    async def invoke(self, request: HandlerRequest) -> Optional[dict[str, Any]]:
        return await self._func(request)


class HttpStepHandler(StepHandler):
    """Forwards invocations to a remote service over HTTP.

    POST {base_url}/{service}/{action}
        {"run_id", "step_id", "agent", "parameters", "context", "attempt"}
    -> 200 {"outputs": {...}}
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, headers: dict = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._headers = headers or {}

    async def invoke(self, request: HandlerRequest) -> Optional[dict[str, Any]]:
        url = f"{self.base_url}/{request.service or request.agent}/{request.action}"
        body = {
            "run_id": request.run_id,
            "step_id": request.step_id,
            "agent": request.agent,
            "parameters": request.parameters,
            "context": request.context,
            "attempt": request.attempt,
        }
        if self._client is not None:
            resp = await self._client.post(url, json=body, headers=self._headers)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=body, headers=self._headers)
        resp.raise_for_status()
        return resp.json()


class HandlerRegistry:
    """Maps (agent, service) to a StepHandler.

    Lookup order: exact (agent, service), then agent alone, then the
    default handler.
    """

    def __init__(self, default: Optional[StepHandler] = None):
        self._handlers: dict[tuple[str, Optional[str]], StepHandler] = {}
        self._default = default

    def register(self, handler: StepHandler, agent: str, service: Optional[str] = None) -> None:
        self._handlers[(agent, service)] = handler
        logger.info("Step handler registered", agent=agent, service=service)

    def set_default(self, handler: Optional[StepHandler]) -> None:
        self._default = handler

    def resolve(self, agent: str, service: str = "") -> Optional[StepHandler]:
        return (
            self._handlers.get((agent, service))
            or self._handlers.get((agent, None))
            or self._default
        )

    def list_all(self) -> list[dict]:
        return [
            {"agent": agent, "service": service, "handler": type(h).__name__}
            for (agent, service), h in self._handlers.items()
        ]


# ─── Executor ─────────────────────────────────────────────────

@dataclass
class StepOutcome:
    """Result of running one step through all of its attempts."""
    step_id: str
    success: bool
    attempts: int
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[HandlerInvocationError] = None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None


class StepExecutor:
    """Invokes step handlers with timeout and fixed-delay retries."""

    DEFAULT_TIMEOUT_SECONDS = 300.0

    def __init__(
        self,
        handler_registry: HandlerRegistry,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._registry = handler_registry
        self._default_timeout = default_timeout
        self._sleep = sleep

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    def timeout_for(self, step: Step) -> float:
        if step.timeout:
            return step.timeout / 1000.0
        return self._default_timeout

    async def invoke_once(
        self,
        step: Step,
        run_id: str,
        context: ExecutionContext,
        attempt: int = 1,
    ) -> dict[str, Any]:
        """One handler invocation. Returns the declared outputs it produced."""
        handler = self._registry.resolve(step.agent, step.service)
        if handler is None:
            raise HandlerInvocationError(
                f"No handler registered for agent '{step.agent}' / service '{step.service}'",
                step_id=step.id,
                attempt=attempt,
            )

        request = HandlerRequest(
            run_id=run_id,
            step_id=step.id,
            agent=step.agent,
            service=step.service,
            action=step.action,
            parameters=copy.deepcopy(step.parameters),
            context=context.snapshot(),
            attempt=attempt,
        )
        timeout = self.timeout_for(step)
        labels = {"agent": step.agent or "-", "action": step.action}
        metrics.inc("step_attempts_total", labels=labels)
        start = time.monotonic()

        try:
            raw = await asyncio.wait_for(handler.invoke(request), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.inc("step_attempt_failures_total", labels=labels)
            raise HandlerTimeoutError(timeout, step_id=step.id, attempt=attempt)
        except HandlerInvocationError:
            metrics.inc("step_attempt_failures_total", labels=labels)
            raise
        except Exception as e:
            metrics.inc("step_attempt_failures_total", labels=labels)
            raise HandlerInvocationError(
                f"{type(e).__name__}: {e}", step_id=step.id, attempt=attempt
            ) from e
        finally:
            metrics.observe("handler_duration_seconds", time.monotonic() - start, labels=labels)

        return self._declared_outputs(step, run_id, raw, attempt)

    def _declared_outputs(self, step: Step, run_id: str, raw: Any, attempt: int) -> dict[str, Any]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise HandlerInvocationError(
                f"Handler returned {type(raw).__name__}, expected an outputs mapping",
                step_id=step.id,
                attempt=attempt,
            )
        if set(raw) == {"outputs"} and isinstance(raw["outputs"], dict):
            raw = raw["outputs"]

        declared = set(step.outputs)
        undeclared = sorted(k for k in raw if k not in declared)
        if undeclared:
            logger.warning(
                "Dropping undeclared handler outputs",
                run_id=run_id,
                step_id=step.id,
                outputs=undeclared,
            )
        missing = sorted(declared - set(raw))
        if missing:
            logger.info("Handler did not populate declared outputs", run_id=run_id, step_id=step.id, outputs=missing)
        return {k: v for k, v in raw.items() if k in declared}

    async def execute(
        self,
        step: Step,
        run_id: str,
        context: ExecutionContext,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> StepOutcome:
        """Run a step through its retry policy.

        Args:
            step: Step definition
            run_id: Owning run
            context: The run's execution context (read-only here)
            on_attempt: Called with the attempt number before each invocation

        Returns:
            StepOutcome; success=False once attempts are exhausted.
        """
        strategy = RetryStrategy.from_policy(step.error_handling.retry)
        attempt = 0

        async def _attempt() -> dict[str, Any]:
            nonlocal attempt
            attempt += 1
            if on_attempt:
                on_attempt(attempt)
            return await self.invoke_once(step, run_id, context, attempt=attempt)

        def _log_retry(retry: int, error: Exception, delay: float) -> None:
            logger.info(
                "Retrying step",
                run_id=run_id,
                step_id=step.id,
                retry=retry,
                max_retries=strategy.max_retries,
                delay_seconds=delay,
                error=str(error),
            )

        try:
            outputs = await execute_with_retry(
                _attempt,
                strategy,
                on_retry=_log_retry,
                sleep=self._sleep,
                retry_on=(HandlerInvocationError,),
            )
        except HandlerInvocationError as e:
            logger.warning(
                "Step attempts exhausted",
                run_id=run_id,
                step_id=step.id,
                attempts=attempt,
                error=e.message,
            )
            return StepOutcome(step_id=step.id, success=False, attempts=attempt, error=e)

        return StepOutcome(step_id=step.id, success=True, attempts=attempt, outputs=outputs)
