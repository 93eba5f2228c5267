"""Core contracts for workflow definitions, runs and queued jobs."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .constants import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_JOB_PRIORITY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_STEP_TIMEOUT_SECONDS,
)
from .errors import MalformedWorkflowError
from .utils.retry import BackoffKind, compute_backoff
from .utils.time import utcnow

RunStatus = Literal["running", "completed", "failed"]
JobStatus = Literal["queued", "running", "done", "failed", "dead"]

TERMINAL_JOB_STATUSES = ("done", "dead")


def _new_id() -> str:
    return str(uuid.uuid4())


class RetryPolicy(BaseModel):
    """How often and how patiently a step is retried."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff: BackoffKind = "exp"
    base_delay: float = Field(default=DEFAULT_BASE_DELAY_SECONDS, ge=0)
    max_delay: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_milliseconds(cls, data: Any) -> Any:
        if isinstance(data, dict) and "base_ms" in data:
            data = dict(data)
            data.setdefault("base_delay", data.pop("base_ms") / 1000)
        return data

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed attempts."""
        return compute_backoff(
            attempt, base=self.base_delay, kind=self.backoff, cap=self.max_delay
        )


class WorkflowTrigger(BaseModel):
    """Events or schedule that start a workflow."""

    type: str = "event"
    event_types: List[str] = Field(default_factory=list)
    cron: Optional[str] = None


class WorkflowStep(BaseModel):
    """One named unit of work in a workflow."""

    id: str
    call: str
    method: str = "POST"
    tool: Optional[str] = None
    body: Optional[Any] = None
    body_from: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    depends_on: List[str] = Field(default_factory=list)
    priority: int = DEFAULT_JOB_PRIORITY

    @model_validator(mode="before")
    @classmethod
    def _accept_milliseconds(cls, data: Any) -> Any:
        if isinstance(data, dict) and "timeout_ms" in data:
            data = dict(data)
            data.setdefault("timeout_seconds", data.pop("timeout_ms") / 1000)
        return data

    @property
    def tool_name(self) -> str:
        """Tool that the step calls, used for rate limiting."""
        return self.tool or tool_from_path(self.call)


def tool_from_path(call_path: str) -> str:
    """Derive a tool name from a call path.

    ``/functions/v1/agent-proxy/clo/begin-week`` maps to ``clo``; paths that
    do not go through the agent proxy map to their first function segment.
    """
    parts = [p for p in call_path.split("?")[0].split("/") if p]
    if parts[:2] == ["functions", "v1"]:
        parts = parts[2:]
    if not parts:
        return "unknown"
    if parts[0] == "agent-proxy" and len(parts) > 1:
        return parts[1]
    return parts[0]


class WorkflowSpec(BaseModel):
    """Immutable definition of a workflow DAG."""

    key: str
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: List[WorkflowStep] = Field(default_factory=list)

    def step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def root_steps(self) -> List[WorkflowStep]:
        """Steps that can start immediately."""
        return [step for step in self.steps if not step.depends_on]

    def dependents_of(self, step_id: str) -> List[WorkflowStep]:
        return [step for step in self.steps if step_id in step.depends_on]

    def validate_graph(self) -> None:
        """Raise ``MalformedWorkflowError`` unless the steps form a DAG."""
        ids = [step.id for step in self.steps]
        if not ids:
            raise MalformedWorkflowError(f"Workflow {self.key} has no steps")
        if len(ids) != len(set(ids)):
            raise MalformedWorkflowError(f"Workflow {self.key} has duplicate step ids")
        known = set(ids)
        for step in self.steps:
            unknown = [dep for dep in step.depends_on if dep not in known]
            if unknown:
                raise MalformedWorkflowError(
                    f"Step {step.id} depends on unknown steps: {', '.join(unknown)}"
                )
            if step.body_from and step.body_from not in step.depends_on:
                raise MalformedWorkflowError(
                    f"Step {step.id} takes its body from {step.body_from} "
                    "without depending on it"
                )
        if not self.root_steps():
            raise MalformedWorkflowError(
                f"Workflow {self.key} has no step without dependencies"
            )

        # Kahn's algorithm; anything left over sits on a cycle.
        remaining = {step.id: set(step.depends_on) for step in self.steps}
        ready = [sid for sid, deps in remaining.items() if not deps]
        while ready:
            current = ready.pop()
            del remaining[current]
            for sid, deps in remaining.items():
                if current in deps:
                    deps.discard(current)
                    if not deps:
                        ready.append(sid)
        if remaining:
            raise MalformedWorkflowError(
                f"Workflow {self.key} has a dependency cycle through: "
                f"{', '.join(sorted(remaining))}"
            )


class StepCall(BaseModel):
    """Resolved call specification stored with a queued job."""

    call_path: str
    method: str = "POST"
    tool: str
    body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    depends_on: List[str] = Field(default_factory=list)
    idempotency_key: Optional[str] = None
    upstream: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRun(BaseModel):
    """One execution of a workflow for one user."""

    run_id: str = Field(default_factory=_new_id)
    workflow_key: str
    user_id: str
    intent_id: Optional[str] = None
    trigger_event_id: Optional[str] = None
    status: RunStatus = "running"
    spec: WorkflowSpec
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class JobQueueEntry(BaseModel):
    """A workflow step waiting for, or undergoing, execution."""

    job_id: str = Field(default_factory=_new_id)
    run_id: str
    step_id: str
    user_id: str
    intent_id: Optional[str] = None
    status: JobStatus = "queued"
    priority: int = DEFAULT_JOB_PRIORITY
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    next_run_at: datetime = Field(default_factory=utcnow)
    lease_until: Optional[datetime] = None
    worker_id: Optional[str] = None
    payload: StepCall
    output: Optional[Any] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def is_eligible(self, now: datetime, done_step_ids: set[str]) -> bool:
        """Return ``True`` when a worker may claim this job at ``now``."""
        return (
            self.status == "queued"
            and self.next_run_at <= now
            and all(dep in done_step_ids for dep in self.payload.depends_on)
        )


class JobAttempt(BaseModel):
    """Audit record of a single execution attempt."""

    attempt_id: str = Field(default_factory=_new_id)
    job_id: str
    attempt_number: int
    worker_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    success: Optional[bool] = None
    status_code: Optional[int] = None
    error_text: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.finished_at is None
