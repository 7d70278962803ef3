"""Workflow Execution Engine: the run scheduler.

Takes a validated WorkflowDefinition and drives one WorkflowRun through
its steps in declared order, one step at a time:

- Conditions gate each step (unmet or unresolvable => skipped)
- humanApprovalRequired suspends the run until a decision arrives
- The Step Executor invokes the external handler with fixed-delay retries
- Successful outputs are merged into the run's ExecutionContext
- Exhausted steps fall back / escalate / notify per their errorHandling

Each run segment is one asyncio task. Approval suspension ends the task;
the decision schedules a new one that resumes at the gated step. Runs
never share an ExecutionContext.

Run states:

    pending -> running -> completed | failed | cancelled
                  running <-> awaiting_approval
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Union

from core import metrics
from core.exceptions import (
    ApprovalRejectedError,
    InvalidRunStateError,
    RunNotFoundError,
)
from notifications.dispatcher import NotificationDispatcher
from workflow.approval import ApprovalDecision, ApprovalGate, ApprovalRequest
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.definition import Step, WorkflowDefinition
from workflow.executor import HandlerRegistry, StepExecutor
from workflow.models import RunStatus, StepRun, StepRunStatus, WorkflowRun, utcnow
from workflow.registry import DefinitionRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Main workflow execution engine.

    Owns every run it creates together with the run's ExecutionContext
    and the definition the run was created from. Definitions are frozen,
    so re-registering a definition never affects runs already created.

    Finished runs are kept for inspection up to max_retained_runs; past
    that the oldest finished runs are forgotten. Unfinished runs are
    never dropped.
    """

    def __init__(
        self,
        registry: Optional[DefinitionRegistry] = None,
        executor: Optional[StepExecutor] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        approval_gate: Optional[ApprovalGate] = None,
        on_step_complete: Optional[Callable] = None,
        on_run_complete: Optional[Callable] = None,
        max_retained_runs: int = 1000,
    ):
        self._registry = registry or DefinitionRegistry()
        self._executor = executor or StepExecutor(HandlerRegistry())
        self._dispatcher = dispatcher
        self._gate = approval_gate or ApprovalGate()
        self._gate.set_decision_callback(self._on_decision)
        self._on_step_complete = on_step_complete
        self._on_run_complete = on_run_complete
        self._max_retained_runs = max_retained_runs

        self._runs: dict[str, WorkflowRun] = {}
        self._contexts: dict[str, ExecutionContext] = {}
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def registry(self) -> DefinitionRegistry:
        return self._registry

    @property
    def executor(self) -> StepExecutor:
        return self._executor

    @property
    def approval_gate(self) -> ApprovalGate:
        return self._gate

    # ─── Run lifecycle ─────────────────────────────────────────

    def create_run(
        self,
        definition: Union[WorkflowDefinition, str],
        triggered_by: Optional[dict] = None,
        trigger_payload: Optional[dict] = None,
    ) -> WorkflowRun:
        """Allocate a pending run with an empty execution context.

        Args:
            definition: A definition or the ID of a registered one
            triggered_by: Trigger description, e.g. {"type": "event", "event": "..."}
            trigger_payload: Data carried by the trigger
        """
        if isinstance(definition, str):
            definition = self._registry.get(definition)

        run = WorkflowRun(
            definition_id=definition.id,
            definition_version=definition.version,
            step_ids=definition.step_ids,
            triggered_by=dict(triggered_by or {"type": "manual"}),
            trigger_payload=dict(trigger_payload or {}),
        )
        self._runs[run.id] = run
        self._contexts[run.id] = ExecutionContext(run_id=run.id)
        self._definitions[run.id] = definition
        metrics.inc("runs_created_total", labels={"workflow": definition.id})
        logger.info(f"Run {run.id} created for workflow {definition.id} ({run.triggered_by.get('type')})")
        return run

    def start_run(self, run_id: str) -> WorkflowRun:
        """Schedule a pending run on the event loop."""
        run = self.get_run(run_id)
        if run.status != RunStatus.PENDING:
            raise InvalidRunStateError(f"Run {run_id} is {run.status.value}, expected pending")
        if run_id in self._tasks:
            raise InvalidRunStateError(f"Run {run_id} is already scheduled")
        self._schedule(run, self._drive(run.id, 0))
        return run

    def trigger_run(
        self,
        definition_id: str,
        triggered_by: Optional[dict] = None,
        trigger_payload: Optional[dict] = None,
    ) -> WorkflowRun:
        """Create and start a run (used by triggers and the manual-start API)."""
        run = self.create_run(definition_id, triggered_by, trigger_payload)
        return self.start_run(run.id)

    async def execute(
        self,
        definition: Union[WorkflowDefinition, str],
        triggered_by: Optional[dict] = None,
        trigger_payload: Optional[dict] = None,
    ) -> WorkflowRun:
        """Create, start and await a run until it completes or suspends."""
        run = self.create_run(definition, triggered_by, trigger_payload)
        self.start_run(run.id)
        return await self.wait_for(run.id)

    async def wait_for(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        """Wait for the run's current scheduling task to finish.

        Returns when the run is terminal or suspended for approval.
        """
        run = self.get_run(run_id)
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            await asyncio.wait([task], timeout=timeout)
        return run

    async def cancel_run(self, run_id: str, reason: Optional[str] = None) -> WorkflowRun:
        """Cancel a non-terminal run, interrupting any in-flight handler call."""
        run = self.get_run(run_id)
        if run.is_terminal:
            raise InvalidRunStateError(f"Run {run_id} is already {run.status.value}")

        self._gate.discard(run_id)
        for step_run in run.steps:
            if step_run.status in (StepRunStatus.RUNNING, StepRunStatus.AWAITING_APPROVAL):
                step_run.status = StepRunStatus.FAILED
                step_run.last_error = "cancelled"
                step_run.completed_at = utcnow()

        await self._finish(run, RunStatus.CANCELLED, reason or "cancelled")

        task = self._tasks.get(run_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])
        return run

    def submit_decision(
        self,
        run_id: str,
        step_id: str,
        decision: Union[ApprovalDecision, str],
        comments: Optional[str] = None,
        outputs: Optional[dict[str, Any]] = None,
        decided_by: Optional[str] = None,
    ) -> WorkflowRun:
        """Approve or reject a suspended step; resumption is scheduled, not awaited."""
        run = self.get_run(run_id)
        self._gate.submit_decision(
            run_id,
            step_id,
            ApprovalDecision(decision),
            comments=comments,
            outputs=outputs,
            decided_by=decided_by,
        )
        return run

    # ─── Queries ───────────────────────────────────────────────

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def get_context(self, run_id: str) -> ExecutionContext:
        self.get_run(run_id)
        return self._contexts[run_id]

    def list_runs(
        self,
        status: Optional[Union[RunStatus, str]] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        status = RunStatus(status) if status else None
        runs = [
            r for r in self._runs.values()
            if (status is None or r.status == status)
            and (definition_id is None or r.definition_id == definition_id)
        ]
        return sorted(runs, key=lambda r: r.created_at)

    def get_running_runs(self) -> dict[str, dict]:
        """Get a summary of every non-terminal run."""
        return {
            run.id: {
                "definition_id": run.definition_id,
                "status": run.status.value,
                "current_step": run.current_step_id,
                "steps_succeeded": sum(1 for s in run.steps if s.status == StepRunStatus.SUCCEEDED),
                "steps_skipped": sum(1 for s in run.steps if s.status == StepRunStatus.SKIPPED),
            }
            for run in self._runs.values()
            if not run.is_terminal
        }

    async def shutdown(self) -> None:
        """Cancel every in-flight scheduling task."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    # ─── Scheduling ────────────────────────────────────────────

    def _schedule(self, run: WorkflowRun, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"workflow-run-{run.id}")
        self._tasks[run.id] = task

        def _forget(t: asyncio.Task) -> None:
            if self._tasks.get(run.id) is t:
                self._tasks.pop(run.id, None)

        task.add_done_callback(_forget)
        return task

    def _on_decision(self, request: ApprovalRequest) -> None:
        run = self._runs.get(request.run_id)
        if run is None or run.status != RunStatus.AWAITING_APPROVAL:
            logger.warning(f"Ignoring decision for run {request.run_id}: not awaiting approval")
            return
        index = self._definitions[run.id].step_index(request.step_id)
        self._schedule(run, self._drive(run.id, index, decision=request))

    async def _drive(
        self,
        run_id: str,
        start_index: int,
        decision: Optional[ApprovalRequest] = None,
    ) -> None:
        """Walk the definition's steps from start_index until the run ends or suspends."""
        run = self._runs[run_id]
        definition = self._definitions[run_id]
        context = self._contexts[run_id]

        try:
            if run.status == RunStatus.PENDING:
                run.transition(RunStatus.RUNNING)
                metrics.inc("runs_started_total", labels={"workflow": definition.id})
                metrics.gauge_inc("runs_active")
                logger.info(f"Run {run_id} started")
            elif run.status == RunStatus.AWAITING_APPROVAL:
                run.transition(RunStatus.RUNNING)
            else:
                return

            index = start_index
            if decision is not None:
                step = definition.steps[index]
                if not await self._apply_decision(run, definition, context, step, decision):
                    return
                index += 1

            steps = definition.steps
            while index < len(steps):
                step = steps[index]
                step_run = run.step(step.id)
                if step_run.status.is_terminal:
                    # already ran as another step's fallback
                    index += 1
                    continue

                status = await self._process_step(run, definition, context, step)
                if status == StepRunStatus.AWAITING_APPROVAL or run.is_terminal:
                    return
                index += 1

            await self._finish(run, RunStatus.COMPLETED)

        except asyncio.CancelledError:
            if not run.is_terminal:
                await self._finish(run, RunStatus.CANCELLED, "cancelled")
            raise
        except Exception as e:
            logger.error(f"Run {run_id} crashed: {e}", exc_info=True)
            if not run.is_terminal:
                await self._finish(run, RunStatus.FAILED, f"internal error: {e}")

    async def _process_step(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        step: Step,
    ) -> StepRunStatus:
        step_run = run.step(step.id)
        run.current_step_id = step.id

        met, reason = ConditionEvaluator.evaluate_all(step.conditions, context)
        if not met:
            step_run.status = StepRunStatus.SKIPPED
            step_run.skip_reason = reason
            step_run.started_at = step_run.completed_at = utcnow()
            logger.info(f"Run {run.id}: step {step.id} skipped ({reason})")
            await self._step_completed(run, step_run)
            return step_run.status

        if step.human_approval_required:
            return await self._suspend(run, definition, step, step_run)

        if await self._run_handler(run, context, step, step_run):
            return step_run.status

        if await self._recover(run, definition, context, step, step_run, chain={step.id}):
            return step_run.status

        await self._finish(run, RunStatus.FAILED, f"step '{step.id}' failed: {step_run.last_error}")
        return step_run.status

    async def _run_handler(
        self,
        run: WorkflowRun,
        context: ExecutionContext,
        step: Step,
        step_run: StepRun,
    ) -> bool:
        """Invoke the step through its retry policy. True on success."""
        step_run.status = StepRunStatus.RUNNING
        step_run.started_at = utcnow()

        def _count(attempt: int) -> None:
            step_run.attempts = attempt

        outcome = await self._executor.execute(step, run.id, context, on_attempt=_count)
        step_run.completed_at = utcnow()

        if outcome.success:
            context.write_outputs(step.id, outcome.outputs)
            step_run.outputs = dict(outcome.outputs)
            step_run.status = StepRunStatus.SUCCEEDED
            step_run.last_error = None
            logger.info(f"Run {run.id}: step {step.id} succeeded after {outcome.attempts} attempt(s)")
        else:
            step_run.status = StepRunStatus.FAILED
            step_run.last_error = outcome.error_message
            logger.warning(f"Run {run.id}: step {step.id} failed after {outcome.attempts} attempt(s): {outcome.error_message}")

        await self._step_completed(run, step_run)
        return outcome.success

    async def _recover(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        step: Step,
        step_run: StepRun,
        chain: set[str],
        escalate: bool = True,
    ) -> bool:
        """Apply errorHandling after a step failed for good.

        The fallback step (if any) runs with its own policy; a recovered
        step keeps status failed with fallback_step_id set. Unrecovered
        failures escalate and notify as declared. Returns True when the
        run may continue.
        """
        policy = step.error_handling

        if policy.fallback:
            fallback = definition.get_step(policy.fallback)
            if fallback is None:
                logger.warning(f"Run {run.id}: fallback '{policy.fallback}' of step {step.id} is not a step of {definition.id}")
            elif fallback.id in chain:
                logger.warning(f"Run {run.id}: fallback cycle at step {fallback.id}, chain={sorted(chain)}")
            elif run.step(fallback.id).status != StepRunStatus.PENDING:
                logger.warning(f"Run {run.id}: fallback step {fallback.id} already ran in this run")
            else:
                logger.info(f"Run {run.id}: step {step.id} failed, running fallback {fallback.id}")
                fallback_run = run.step(fallback.id)
                recovered = await self._run_handler(run, context, fallback, fallback_run)
                if not recovered:
                    recovered = await self._recover(
                        run, definition, context, fallback, fallback_run, chain | {fallback.id}
                    )
                if recovered:
                    step_run.fallback_step_id = fallback.id
                    metrics.inc("fallbacks_total", labels={"workflow": definition.id, "outcome": "recovered"})
                    return True
                metrics.inc("fallbacks_total", labels={"workflow": definition.id, "outcome": "failed"})

        await self._escalate_and_notify(run, definition, step, step_run, escalate=escalate)
        return False

    async def _escalate_and_notify(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: Step,
        step_run: StepRun,
        escalate: bool = True,
    ) -> None:
        policy = step.error_handling
        if self._dispatcher is None:
            if policy.escalate or policy.notification:
                logger.warning(f"Run {run.id}: no dispatcher configured, dropping escalation/notification for {step.id}")
            return

        reason = step_run.last_error or "step failed"
        if escalate and policy.escalate:
            await self._dispatcher.escalate(
                run.id,
                step.id,
                reason,
                step_run.attempts,
                workflow_name=definition.name,
            )
        if policy.notification and policy.notification.channels:
            await self._dispatcher.notify_step_failure(
                run.id,
                step.id,
                reason,
                step_run.attempts,
                channels=list(policy.notification.channels),
                recipients=list(policy.notification.recipients),
                workflow_name=definition.name,
            )

    # ─── Approval ──────────────────────────────────────────────

    async def _suspend(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: Step,
        step_run: StepRun,
    ) -> StepRunStatus:
        step_run.status = StepRunStatus.AWAITING_APPROVAL
        step_run.started_at = utcnow()
        run.transition(RunStatus.AWAITING_APPROVAL)
        request = self._gate.open(ApprovalRequest(
            run_id=run.id,
            step_id=step.id,
            definition_id=definition.id,
            step_name=step.name,
            action=step.action,
            parameters=dict(step.parameters),
        ))
        step_run.approval = request.to_dict()
        metrics.inc("approvals_requested_total", labels={"workflow": definition.id})
        logger.info(f"Run {run.id}: awaiting approval for step {step.id}")
        return step_run.status

    async def _apply_decision(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        step: Step,
        decision: ApprovalRequest,
    ) -> bool:
        """Resume a gated step. True when the run may continue past it.

        Approval stands in for the step's handler: an approved step is
        marked succeeded with the approver's outputs and its agent is never
        called, whatever the step type. A rejected step goes through its
        fallback like any failed step, without escalating.
        """
        step_run = run.step(step.id)
        step_run.approval = decision.to_dict()
        step_run.completed_at = utcnow()
        metrics.inc("approval_decisions_total", labels={"decision": decision.decision.value})

        if decision.decision == ApprovalDecision.APPROVE:
            declared = set(step.outputs)
            dropped = sorted(k for k in decision.outputs if k not in declared)
            if dropped:
                logger.warning(f"Run {run.id}: dropping undeclared approval outputs {dropped} for step {step.id}")
            outputs = {k: v for k, v in decision.outputs.items() if k in declared}
            context.write_outputs(step.id, outputs)
            step_run.outputs = outputs
            step_run.status = StepRunStatus.SUCCEEDED
            logger.info(f"Run {run.id}: step {step.id} approved")
            await self._step_completed(run, step_run)
            return True

        error = ApprovalRejectedError(run.id, step.id, decision.comments)
        step_run.status = StepRunStatus.FAILED
        step_run.last_error = error.message
        logger.info(f"Run {run.id}: step {step.id} rejected")
        await self._step_completed(run, step_run)

        if await self._recover(run, definition, context, step, step_run, chain={step.id}, escalate=False):
            return True
        await self._finish(run, RunStatus.FAILED, error.message)
        return False

    # ─── Completion ────────────────────────────────────────────

    async def _step_completed(self, run: WorkflowRun, step_run: StepRun) -> None:
        metrics.inc("steps_total", labels={"status": step_run.status.value})
        if self._on_step_complete:
            try:
                result = self._on_step_complete(run, step_run)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"on_step_complete callback failed: {e}")

    async def _finish(self, run: WorkflowRun, status: RunStatus, error: Optional[str] = None) -> None:
        """Move a run to a terminal state. Hooks fire exactly once."""
        if run.is_terminal:
            return
        was_started = run.started_at is not None
        run.transition(status, error=error)
        if was_started:
            metrics.gauge_inc("runs_active", -1)
        metrics.inc("runs_finished_total", labels={"workflow": run.definition_id, "status": status.value})

        if status == RunStatus.COMPLETED:
            logger.info(f"Run {run.id} completed")
        else:
            logger.warning(f"Run {run.id} {status.value}: {error}")

        if self._on_run_complete:
            try:
                result = self._on_run_complete(run)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"on_run_complete callback failed: {e}")

        self._evict_finished_runs()

    def _evict_finished_runs(self) -> None:
        finished = [run_id for run_id, run in self._runs.items() if run.is_terminal]
        excess = len(finished) - self._max_retained_runs
        for run_id in finished[:max(0, excess)]:
            self._runs.pop(run_id, None)
            self._contexts.pop(run_id, None)
            self._definitions.pop(run_id, None)
        if excess > 0:
            logger.debug(f"Forgot {excess} finished run(s) past the retention limit")
