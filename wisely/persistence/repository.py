"""Repository abstractions for orchestration state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Tuple, TypeVar

from ..contracts import JobAttempt, JobQueueEntry, WorkflowRun
from ..ratelimit.models import RateLimitBucket
from ..session.models import EducationSession
from .models import AuditEvent, ClaimedJob, RunState

T = TypeVar("T")

RunMutation = Callable[[RunState], T]
BucketMutation = Callable[[Optional[RateLimitBucket]], Tuple[RateLimitBucket, T]]
SessionMutation = Callable[[EducationSession], T]


class WorkflowStore(Protocol):
    """Durable tables ``workflow_runs``, ``job_queue`` and ``job_attempts``."""

    async def create_run(self, run: WorkflowRun, jobs: list[JobQueueEntry]) -> None:
        """Insert a run and its initial jobs in one transaction."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(
        self,
        user_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        """Return runs, newest first."""

    async def list_jobs(
        self,
        run_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[JobQueueEntry]:
        """Return queued jobs matching the filters, oldest first."""

    async def list_attempts(self, job_id: str) -> list[JobAttempt]:
        """Return every attempt of a job in start order."""

    async def claim_jobs(
        self, now: datetime, worker_id: str, lease_until: datetime, limit: int
    ) -> list[ClaimedJob]:
        """Atomically move up to ``limit`` eligible jobs to ``running``.

        A job is eligible when it is queued, due and all of its dependencies
        are done. No job is ever handed to two workers at once.
        """

    async def stale_jobs(self, now: datetime) -> list[JobQueueEntry]:
        """Running jobs whose lease expired before ``now``."""

    async def mutate_run(self, run_id: str, mutation: RunMutation[T]) -> T:
        """Apply ``mutation`` to the run's state atomically and persist it."""


class RateLimitStore(Protocol):
    """Durable table ``rate_limits``."""

    async def modify_bucket(self, key: str, mutation: BucketMutation[T]) -> T:
        """Read-modify-write one bucket atomically."""

    async def get_bucket(self, key: str) -> RateLimitBucket | None:
        """Return the stored bucket without modifying it."""


class SessionStore(Protocol):
    """Durable table ``education_sessions`` keyed by user, week and day."""

    async def update_session(
        self,
        user_id: str,
        week: int,
        day: int,
        mutation: SessionMutation[T],
        now: Optional[datetime] = None,
    ) -> T:
        """Fetch or create the session and apply ``mutation`` atomically.

        ``now`` stamps ``updated_at`` (and ``created_at`` for a new session);
        defaults to the wall clock.
        """

    async def get_session(
        self, user_id: str, week: int, day: int
    ) -> EducationSession | None:
        """Return the session for the tuple, if any."""

    async def list_sessions(self, user_id: str) -> list[EducationSession]:
        """Return the user's sessions, most recently updated first."""

    async def list_user_ids(self) -> list[str]:
        """Every user with a workflow run or a session, sorted."""


class AuditStore(Protocol):
    """Append-only ``audit_events`` table."""

    async def record_event(self, event: AuditEvent) -> None:
        """Persist an audit event."""

    async def list_events(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        """Return audit events, newest first."""


class Store(WorkflowStore, RateLimitStore, SessionStore, AuditStore, Protocol):
    """Everything the orchestrator persists."""

    async def close(self) -> None:
        """Release connections held by the backend."""
