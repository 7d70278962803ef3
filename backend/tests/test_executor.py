"""Tests for the step executor: invocation, timeouts, retries, outputs."""

import asyncio

import httpx
import pytest

from core import metrics
from core.exceptions import HandlerInvocationError, HandlerTimeoutError
from workflow.context import ExecutionContext
from workflow.definition import Step
from workflow.executor import (
    CallableHandler,
    HandlerRegistry,
    HttpStepHandler,
    StepExecutor,
)


def _step(**fields) -> Step:
    base = {
        "id": "analyze",
        "type": "analyze",
        "agent": "analytics",
        "service": "pricing",
        "action": "analyzePrices",
        "outputs": ["report"],
    }
    base.update(fields)
    return Step.model_validate(base)


@pytest.fixture
def ctx() -> ExecutionContext:
    context = ExecutionContext(run_id="run-1")
    context.write_outputs("detect", {"signal": 7})
    return context


@pytest.mark.unit
class TestHandlerRegistry:

    def test_lookup_order(self, handler):
        exact = CallableHandler(lambda r: None)
        by_agent = CallableHandler(lambda r: None)
        registry = HandlerRegistry(default=handler)
        registry.register(exact, "analytics", "pricing")
        registry.register(by_agent, "analytics")

        assert registry.resolve("analytics", "pricing") is exact
        assert registry.resolve("analytics", "other") is by_agent
        assert registry.resolve("monitoring", "pricing") is handler

    def test_no_handler(self):
        assert HandlerRegistry().resolve("analytics") is None

    def test_list_all(self, handler):
        registry = HandlerRegistry()
        registry.register(handler, "analytics", "pricing")
        assert registry.list_all() == [
            {"agent": "analytics", "service": "pricing", "handler": "ScriptedHandler"}
        ]


@pytest.mark.unit
class TestInvokeOnce:

    async def test_handler_receives_request(self, handler, ctx):
        handler.script("analyzePrices", {"report": {"ok": True}})
        executor = StepExecutor(HandlerRegistry(default=handler))
        step = _step(parameters={"window": "7d"})

        outputs = await executor.invoke_once(step, "run-1", ctx)

        assert outputs == {"report": {"ok": True}}
        [request] = handler.calls
        assert request.run_id == "run-1"
        assert request.agent == "analytics"
        assert request.service == "pricing"
        assert request.parameters == {"window": "7d"}
        assert request.context == {"detect": {"signal": 7}}
        assert request.attempt == 1

    async def test_handler_cannot_mutate_context(self, handler, ctx):
        async def mutate(request):
            request.context["detect"]["signal"] = 0
            return {}
        handler.script("analyzePrices", mutate)
        executor = StepExecutor(HandlerRegistry(default=handler))

        await executor.invoke_once(_step(), "run-1", ctx)
        assert ctx.get("detect", "signal") == 7

    async def test_outputs_envelope(self, handler, ctx):
        handler.script("analyzePrices", {"outputs": {"report": 1}})
        executor = StepExecutor(HandlerRegistry(default=handler))
        assert await executor.invoke_once(_step(), "run-1", ctx) == {"report": 1}

    async def test_undeclared_outputs_dropped(self, handler, ctx):
        handler.script("analyzePrices", {"report": 1, "secret": 2})
        executor = StepExecutor(HandlerRegistry(default=handler))
        assert await executor.invoke_once(_step(), "run-1", ctx) == {"report": 1}

    async def test_none_means_no_outputs(self, handler, ctx):
        handler.script("analyzePrices", None)
        executor = StepExecutor(HandlerRegistry(default=handler))
        assert await executor.invoke_once(_step(), "run-1", ctx) == {}

    async def test_non_mapping_result_is_an_error(self, handler, ctx):
        handler.script("analyzePrices", ["not", "a", "dict"])
        executor = StepExecutor(HandlerRegistry(default=handler))
        with pytest.raises(HandlerInvocationError, match="expected an outputs mapping"):
            await executor.invoke_once(_step(), "run-1", ctx)

    async def test_handler_exception_is_wrapped(self, handler, ctx):
        handler.script("analyzePrices", RuntimeError("agent down"))
        executor = StepExecutor(HandlerRegistry(default=handler))
        with pytest.raises(HandlerInvocationError) as exc_info:
            await executor.invoke_once(_step(), "run-1", ctx, attempt=2)
        assert exc_info.value.message == "RuntimeError: agent down"
        assert exc_info.value.attempt == 2
        assert metrics.counter_value(
            "step_attempt_failures_total", {"agent": "analytics", "action": "analyzePrices"}
        ) == 1

    async def test_missing_handler(self, ctx):
        executor = StepExecutor(HandlerRegistry())
        with pytest.raises(HandlerInvocationError, match="No handler registered"):
            await executor.invoke_once(_step(), "run-1", ctx)

    async def test_timeout(self, handler, ctx):
        async def slow(request):
            await asyncio.sleep(5)
            return {}
        handler.script("analyzePrices", slow)
        executor = StepExecutor(HandlerRegistry(default=handler))

        with pytest.raises(HandlerTimeoutError) as exc_info:
            await executor.invoke_once(_step(timeout=20), "run-1", ctx)
        assert exc_info.value.timeout == 0.02

    def test_timeout_for(self):
        executor = StepExecutor(HandlerRegistry(), default_timeout=30.0)
        assert executor.timeout_for(_step()) == 30.0
        assert executor.timeout_for(_step(timeout=1500)) == 1.5


@pytest.mark.unit
class TestExecute:

    async def test_retries_then_succeeds(self, handler, ctx, recording_sleep):
        handler.script("analyzePrices", RuntimeError("flaky"), RuntimeError("flaky"), {"report": "done"})
        executor = StepExecutor(HandlerRegistry(default=handler), sleep=recording_sleep)
        step = _step(errorHandling={"retry": {"attempts": 3, "delay": 1000}})
        seen = []

        outcome = await executor.execute(step, "run-1", ctx, on_attempt=seen.append)

        assert outcome.success is True
        assert outcome.attempts == 3
        assert outcome.outputs == {"report": "done"}
        assert seen == [1, 2, 3]
        assert recording_sleep.delays == [1.0, 1.0]
        assert [c.attempt for c in handler.calls] == [1, 2, 3]

    async def test_exhaustion_invokes_attempts_plus_one(self, handler, ctx, recording_sleep):
        handler.script("analyzePrices", RuntimeError("always"))
        executor = StepExecutor(HandlerRegistry(default=handler), sleep=recording_sleep)
        step = _step(errorHandling={"retry": {"attempts": 3, "delay": 5000}})

        outcome = await executor.execute(step, "run-1", ctx)

        assert outcome.success is False
        assert outcome.attempts == 4
        assert len(handler.calls) == 4
        assert recording_sleep.delays == [5.0, 5.0, 5.0]
        assert outcome.error_message == "RuntimeError: always"

    async def test_no_retry_policy_means_single_attempt(self, handler, ctx, recording_sleep):
        handler.script("analyzePrices", RuntimeError("nope"))
        executor = StepExecutor(HandlerRegistry(default=handler), sleep=recording_sleep)

        outcome = await executor.execute(_step(), "run-1", ctx)

        assert outcome.success is False
        assert outcome.attempts == 1
        assert recording_sleep.delays == []

    async def test_timeouts_are_retried(self, handler, ctx, recording_sleep):
        async def slow(request):
            await asyncio.sleep(5)
        handler.script("analyzePrices", slow, {"report": 1})
        executor = StepExecutor(HandlerRegistry(default=handler), sleep=recording_sleep)
        step = _step(timeout=10, errorHandling={"retry": {"attempts": 1, "delay": 0}})

        outcome = await executor.execute(step, "run-1", ctx)

        assert outcome.success is True
        assert outcome.attempts == 2


@pytest.mark.unit
class TestHttpStepHandler:

    async def test_posts_to_service_action(self, ctx):
        seen = {}

        def respond(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(200, json={"outputs": {"report": {"rows": 3}}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(respond))
        registry = HandlerRegistry(default=HttpStepHandler("http://agents.local/", client=client))
        executor = StepExecutor(registry)

        outputs = await executor.invoke_once(_step(), "run-9", ctx)
        await client.aclose()

        assert outputs == {"report": {"rows": 3}}
        assert seen["url"] == "http://agents.local/pricing/analyzePrices"
        assert b'"run_id":"run-9"' in seen["body"].replace(b" ", b"")

    async def test_http_error_is_a_handler_error(self, ctx):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        executor = StepExecutor(HandlerRegistry(default=HttpStepHandler("http://agents.local", client=client)))

        with pytest.raises(HandlerInvocationError, match="HTTPStatusError"):
            await executor.invoke_once(_step(), "run-1", ctx)
        await client.aclose()
