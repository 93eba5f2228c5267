"""Exception taxonomy for orchestration failures."""

from __future__ import annotations


class WiselyError(Exception):
    """Base class for all wisely errors."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ValidationError(WiselyError):
    """A request is missing fields or carries malformed values."""

    status_code = 400


class MalformedWorkflowError(ValidationError):
    """A workflow specification cannot be executed as a DAG."""


class WorkflowNotFoundError(WiselyError):
    """No workflow definition exists for the requested key."""

    status_code = 404

    def __init__(self, workflow_key: str) -> None:
        super().__init__(f"Workflow not found: {workflow_key}")
        self.workflow_key = workflow_key


class LogicError(WiselyError):
    """A semantic rejection that retrying cannot fix."""

    status_code = 422


class PreconditionError(LogicError):
    """An event arrived while the session is in the wrong phase."""

    status_code = 409


class SessionBusyError(PreconditionError):
    """Another event for the same session is still being processed."""


class InfrastructureError(WiselyError):
    """Transient failure of the network, a tool or the datastore."""

    status_code = 500
    retryable = True


class StoreError(InfrastructureError):
    """The persistent store rejected or failed an operation."""


class RateLimited(WiselyError):
    """A rate limit bucket has no tokens left for the caller."""

    status_code = 429
    retryable = True

    def __init__(self, key: str, retry_after: float | None = None) -> None:
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after
