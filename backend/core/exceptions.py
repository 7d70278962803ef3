"""Custom exceptions for the workflow execution engine."""

from typing import Optional


class EngineException(Exception):
    """Base exception for the workflow execution engine."""

    error_code = "engine_error"

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ConfigurationError(EngineException):
    """A workflow definition failed validation.

    Carries every violation found, not just the first one.
    """

    error_code = "configuration_error"

    def __init__(self, violations: list[str], source: Optional[str] = None):
        self.violations = list(violations)
        self.source = source
        prefix = f"Invalid workflow definition ({source})" if source else "Invalid workflow definition"
        message = f"{prefix}: " + "; ".join(self.violations)
        super().__init__(message, 422)


class ConditionUnresolvedError(EngineException):
    """A condition field path could not be resolved against the context.

    Internal only: the scheduler treats it as "condition not met".
    """

    error_code = "condition_unresolved"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Cannot resolve condition path '{path}'", 500)


class HandlerInvocationError(EngineException):
    """The external step handler raised or returned an unusable result."""

    error_code = "handler_invocation_error"

    def __init__(self, message: str, step_id: Optional[str] = None, attempt: int = 0):
        self.step_id = step_id
        self.attempt = attempt
        super().__init__(message, 502)


class HandlerTimeoutError(HandlerInvocationError):
    """The step handler did not return within the bounded timeout."""

    error_code = "handler_timeout"

    def __init__(self, timeout: float, step_id: Optional[str] = None, attempt: int = 0):
        self.timeout = timeout
        super().__init__(f"Handler timed out after {timeout}s", step_id=step_id, attempt=attempt)


class ApprovalRejectedError(EngineException):
    """A human approver rejected a step that declares no fallback."""

    error_code = "approval_rejected"

    def __init__(self, run_id: str, step_id: str, comments: Optional[str] = None):
        self.run_id = run_id
        self.step_id = step_id
        self.comments = comments
        message = f"Approval rejected for step '{step_id}'"
        if comments:
            message += f": {comments}"
        super().__init__(message, 409)


class NotificationDispatchError(EngineException):
    """A notification could not be delivered on any attempt."""

    error_code = "notification_dispatch_error"

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message, 502)


class EscalationDispatchError(NotificationDispatchError):
    """An escalation could not be delivered on any attempt."""

    error_code = "escalation_dispatch_error"


class RunNotFoundError(EngineException):
    """No workflow run with the given ID."""

    error_code = "run_not_found"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}", 404)


class DefinitionNotFoundError(EngineException):
    """No registered workflow definition with the given ID."""

    error_code = "definition_not_found"

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition not found: {definition_id}", 404)


class ApprovalNotPendingError(EngineException):
    """A decision arrived for a step that is not awaiting approval."""

    error_code = "approval_not_pending"

    def __init__(self, run_id: str, step_id: str):
        self.run_id = run_id
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' of run {run_id} is not awaiting approval", 409)


class InvalidRunStateError(EngineException):
    """The requested transition is not allowed from the run's current state."""

    error_code = "invalid_run_state"

    def __init__(self, message: str = "Invalid run state"):
        super().__init__(message, 409)
