"""In-memory implementation of the orchestration store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Tuple

from ..contracts import JobAttempt, JobQueueEntry, WorkflowRun
from ..errors import StoreError
from ..ratelimit.models import RateLimitBucket
from ..session.models import EducationSession
from ..utils.time import utcnow
from .models import AuditEvent, ClaimedJob, RunState
from .repository import BucketMutation, RunMutation, SessionMutation, Store, T


class InMemoryStore(Store):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every operation runs without awaiting
    between its read and its write, which makes it atomic on the event loop.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._jobs: Dict[str, JobQueueEntry] = {}
        self._attempts: Dict[str, JobAttempt] = {}
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._sessions: Dict[Tuple[str, int, int], EducationSession] = {}
        self._events: List[AuditEvent] = []

    # ------------------------------------------------------------------
    # Workflow runs and jobs
    async def create_run(self, run: WorkflowRun, jobs: list[JobQueueEntry]) -> None:
        if run.run_id in self._runs:
            raise StoreError(f"Run {run.run_id} already exists")
        self._runs[run.run_id] = run.model_copy(deep=True)
        for job in jobs:
            self._jobs[job.job_id] = job.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        user_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        runs = [
            run
            for run in self._runs.values()
            if (user_id is None or run.user_id == user_id)
            and (status is None or run.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [run.model_copy(deep=True) for run in runs[:limit]]

    async def list_jobs(
        self,
        run_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[JobQueueEntry]:
        jobs = [
            job
            for job in self._jobs.values()
            if (run_id is None or job.run_id == run_id)
            and (user_id is None or job.user_id == user_id)
            and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at)
        return [job.model_copy(deep=True) for job in jobs]

    async def list_attempts(self, job_id: str) -> list[JobAttempt]:
        attempts = [a for a in self._attempts.values() if a.job_id == job_id]
        attempts.sort(key=lambda a: (a.attempt_number, a.started_at))
        return [a.model_copy(deep=True) for a in attempts]

    async def claim_jobs(
        self, now: datetime, worker_id: str, lease_until: datetime, limit: int
    ) -> list[ClaimedJob]:
        candidates = sorted(
            (job for job in self._jobs.values() if job.status == "queued"),
            key=lambda j: (j.priority, j.next_run_at),
        )
        claimed: list[ClaimedJob] = []
        for job in candidates:
            if len(claimed) >= limit:
                break
            done = {
                j.step_id
                for j in self._jobs.values()
                if j.run_id == job.run_id and j.status == "done"
            }
            if not job.is_eligible(now, done):
                continue
            job.status = "running"
            job.worker_id = worker_id
            job.lease_until = lease_until
            job.updated_at = now
            attempt = JobAttempt(
                job_id=job.job_id,
                attempt_number=self._attempt_count(job.job_id) + 1,
                worker_id=worker_id,
                started_at=now,
            )
            self._attempts[attempt.attempt_id] = attempt
            claimed.append(
                ClaimedJob(
                    job=job.model_copy(deep=True), attempt=attempt.model_copy(deep=True)
                )
            )
        return claimed

    def _attempt_count(self, job_id: str) -> int:
        return sum(1 for a in self._attempts.values() if a.job_id == job_id)

    async def stale_jobs(self, now: datetime) -> list[JobQueueEntry]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if job.status == "running"
            and job.lease_until is not None
            and job.lease_until < now
        ]

    async def mutate_run(self, run_id: str, mutation: RunMutation[T]) -> T:
        run = self._runs.get(run_id)
        if run is None:
            raise StoreError(f"Run {run_id} not found")
        state = RunState(
            run=run.model_copy(deep=True),
            jobs=[
                job.model_copy(deep=True)
                for job in sorted(self._jobs.values(), key=lambda j: j.created_at)
                if job.run_id == run_id
            ],
        )
        result = mutation(state)
        self._runs[run_id] = state.run
        for job in state.jobs:
            self._jobs[job.job_id] = job
        for attempt in state.attempts:
            self._attempts[attempt.attempt_id] = attempt
        return result

    # ------------------------------------------------------------------
    # Rate limits
    async def modify_bucket(self, key: str, mutation: BucketMutation[T]) -> T:
        current = self._buckets.get(key)
        bucket, result = mutation(current.model_copy() if current else None)
        self._buckets[key] = bucket
        return result

    async def get_bucket(self, key: str) -> RateLimitBucket | None:
        bucket = self._buckets.get(key)
        return bucket.model_copy() if bucket else None

    # ------------------------------------------------------------------
    # Sessions
    async def update_session(
        self,
        user_id: str,
        week: int,
        day: int,
        mutation: SessionMutation[T],
        now: datetime | None = None,
    ) -> T:
        stamp = now or utcnow()
        key = (user_id, week, day)
        current = self._sessions.get(key)
        session = (
            current.model_copy(deep=True)
            if current
            else EducationSession(
                user_id=user_id, week=week, day=day, created_at=stamp, updated_at=stamp
            )
        )
        result = mutation(session)
        session.updated_at = stamp
        self._sessions[key] = session
        return result

    async def get_session(
        self, user_id: str, week: int, day: int
    ) -> EducationSession | None:
        session = self._sessions.get((user_id, week, day))
        return session.model_copy(deep=True) if session else None

    async def list_sessions(self, user_id: str) -> list[EducationSession]:
        sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in sessions]

    async def list_user_ids(self) -> list[str]:
        users = {run.user_id for run in self._runs.values()}
        users.update(s.user_id for s in self._sessions.values())
        return sorted(users)

    # ------------------------------------------------------------------
    # Audit
    async def record_event(self, event: AuditEvent) -> None:
        self._events.append(event.model_copy(deep=True))

    async def list_events(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        events = [e for e in self._events if user_id is None or e.user_id == user_id]
        return [e.model_copy(deep=True) for e in reversed(events)][:limit]

    async def close(self) -> None:
        pass
