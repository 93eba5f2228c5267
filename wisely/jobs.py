"""Durable job queue with dependency-aware fan-out and retry."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .constants import (
    NETWORK_FAILURE_STATUS,
    RATE_LIMIT_REQUEUE_DELAY_SECONDS,
    RATE_LIMITED_STATUS,
    WORKER_BATCH_SIZE,
    WORKER_LEASE_SECONDS,
)
from .contracts import JobAttempt, JobQueueEntry, StepCall, WorkflowRun, WorkflowStep
from .persistence.models import ClaimedJob, RunState
from .persistence.repository import WorkflowStore
from .utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


def render_template(value: str, context: Dict[str, str]) -> str:
    """Replace ``${name}`` placeholders with values from ``context``.

    Unknown placeholders are left as they are.
    """
    return _PLACEHOLDER.sub(lambda m: context.get(m.group(1), m.group(0)), value)


def resolve_body(
    step: WorkflowStep, run: WorkflowRun, upstream: Dict[str, Any]
) -> Optional[Any]:
    """Request body for ``step`` given the outputs of its dependencies."""
    if step.body_from:
        body = upstream.get(step.body_from)
        if isinstance(body, dict) and isinstance(step.body, dict):
            return {**body, **step.body}
        return body
    if step.body is not None:
        return step.body
    if step.method.upper() == "GET":
        return None
    return run.payload or None


def build_step_call(
    run: WorkflowRun, step: WorkflowStep, upstream: Optional[Dict[str, Any]] = None
) -> StepCall:
    """Resolve a workflow step into the call stored on its job."""
    upstream = {dep: (upstream or {}).get(dep) for dep in step.depends_on}
    context = {
        "workflow_run_id": run.run_id,
        "step_id": step.id,
        "user_id": run.user_id,
    }
    headers = {name: render_template(value, context) for name, value in step.headers.items()}
    idempotency_key = next(
        (v for k, v in headers.items() if k.lower() == "x-idempotency-key"),
        f"{run.run_id}-{step.id}",
    )
    return StepCall(
        call_path=step.call,
        method=step.method.upper(),
        tool=step.tool_name,
        body=resolve_body(step, run, upstream),
        headers={k: v for k, v in headers.items() if k.lower() != "x-idempotency-key"},
        timeout_seconds=step.timeout_seconds,
        retry=step.retry,
        depends_on=list(step.depends_on),
        idempotency_key=idempotency_key,
        upstream=upstream,
    )


def new_job(
    run: WorkflowRun,
    step: WorkflowStep,
    now: datetime,
    upstream: Optional[Dict[str, Any]] = None,
) -> JobQueueEntry:
    return JobQueueEntry(
        run_id=run.run_id,
        step_id=step.id,
        user_id=run.user_id,
        intent_id=run.intent_id,
        priority=step.priority,
        max_attempts=step.retry.max_attempts,
        next_run_at=now,
        payload=build_step_call(run, step, upstream),
        created_at=now,
        updated_at=now,
    )


def _close_attempt(
    attempt: JobAttempt,
    now: datetime,
    success: bool,
    status_code: Optional[int],
    error: Optional[str] = None,
) -> JobAttempt:
    return attempt.model_copy(
        update={
            "finished_at": now,
            "success": success,
            "status_code": status_code,
            "error_text": error,
        }
    )


def enqueue_ready(state: RunState, now: datetime) -> List[JobQueueEntry]:
    """Create a job for every step whose dependencies are all done.

    Steps that already have a job are skipped, so calling this repeatedly
    never duplicates work.
    """
    done = state.done_step_ids()
    outputs = {job.step_id: job.output for job in state.jobs if job.status == "done"}
    created: List[JobQueueEntry] = []
    for step in state.run.spec.steps:
        if state.job_for_step(step.id) is not None:
            continue
        if all(dep in done for dep in step.depends_on):
            job = new_job(state.run, step, now, outputs)
            state.jobs.append(job)
            created.append(job)
    return created


def _finish_run_if_complete(state: RunState, now: datetime) -> None:
    done = state.done_step_ids()
    if state.run.status == "running" and all(
        step.id in done for step in state.run.spec.steps
    ):
        state.run.status = "completed"
        state.run.finished_at = now
        logger.info(f"Run {state.run.run_id} ({state.run.workflow_key}) completed")


def _record_failure(
    state: RunState,
    job: JobQueueEntry,
    now: datetime,
    error: str,
    retryable: bool,
    retry_after: Optional[float] = None,
) -> None:
    job.attempts += 1
    job.last_error = error
    job.lease_until = None
    job.worker_id = None
    job.updated_at = now
    if retryable and job.attempts < job.max_attempts:
        delay = job.payload.retry.delay_for(job.attempts)
        if retry_after:
            delay = max(delay, retry_after)
        job.status = "queued"
        job.next_run_at = now + timedelta(seconds=delay)
        logger.warning(
            f"Job {job.job_id} ({job.step_id}) failed attempt "
            f"{job.attempts}/{job.max_attempts}, retrying in {delay:.1f}s: {error}"
        )
        return

    job.status = "dead"
    logger.error(
        f"Job {job.job_id} ({job.step_id}) is dead after {job.attempts} "
        f"attempt(s): {error}"
    )
    if state.run.status == "running":
        state.run.status = "failed"
        state.run.finished_at = now
        logger.error(f"Run {state.run.run_id} ({state.run.workflow_key}) failed")


class JobQueue:
    """Claim, complete and retry jobs stored in a :class:`WorkflowStore`.

    Every state change for a run goes through ``mutate_run`` so that marking
    a step done and queueing its unblocked dependents happen together.
    """

    def __init__(
        self,
        store: WorkflowStore,
        now: Optional[Clock] = None,
        rate_limit_delay: float = RATE_LIMIT_REQUEUE_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self._now = now or utcnow
        self.rate_limit_delay = rate_limit_delay

    def now(self) -> datetime:
        return self._now()

    async def claim(
        self,
        worker_id: str,
        lease_seconds: float = WORKER_LEASE_SECONDS,
        limit: int = WORKER_BATCH_SIZE,
    ) -> List[ClaimedJob]:
        """Lease up to ``limit`` eligible jobs for ``worker_id``."""
        now = self._now()
        claimed = await self.store.claim_jobs(
            now, worker_id, now + timedelta(seconds=lease_seconds), limit
        )
        if claimed:
            logger.info(f"Worker {worker_id} claimed {len(claimed)} job(s)")
        return claimed

    async def complete(
        self, claimed: ClaimedJob, output: Any = None, status_code: int = 200
    ) -> List[JobQueueEntry]:
        """Mark the job done and queue the dependents it unblocks.

        Returns the newly queued jobs.
        """
        now = self._now()

        def _apply(state: RunState) -> List[JobQueueEntry]:
            state.attempts.append(_close_attempt(claimed.attempt, now, True, status_code))
            job = state.job(claimed.job.job_id)
            if job.is_terminal:
                return []
            job.status = "done"
            job.attempts += 1
            job.output = output
            job.last_error = None
            job.lease_until = None
            job.updated_at = now
            created = enqueue_ready(state, now)
            state.run.updated_at = now
            _finish_run_if_complete(state, now)
            return created

        created = await self.store.mutate_run(claimed.job.run_id, _apply)
        logger.info(
            f"Job {claimed.job.job_id} ({claimed.job.step_id}) done; "
            f"queued {[job.step_id for job in created]}"
        )
        return created

    async def fail(
        self,
        claimed: ClaimedJob,
        error: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
        retry_after: Optional[float] = None,
    ) -> JobQueueEntry:
        """Record a failed attempt and either schedule a retry or dead-letter the job."""
        now = self._now()

        def _apply(state: RunState) -> JobQueueEntry:
            state.attempts.append(
                _close_attempt(claimed.attempt, now, False, status_code, error)
            )
            job = state.job(claimed.job.job_id)
            if job.status != "running" or job.worker_id != claimed.attempt.worker_id:
                # The lease was lost; whoever holds the job now decides its fate.
                return job
            _record_failure(state, job, now, error, retryable, retry_after)
            state.run.updated_at = now
            return job

        return await self.store.mutate_run(claimed.job.run_id, _apply)

    async def defer(
        self, claimed: ClaimedJob, delay: Optional[float] = None
    ) -> JobQueueEntry:
        """Re-queue a rate-limited job without consuming an attempt."""
        now = self._now()
        delay = self.rate_limit_delay if delay is None else max(delay, 0.0)

        def _apply(state: RunState) -> JobQueueEntry:
            state.attempts.append(
                _close_attempt(
                    claimed.attempt, now, False, RATE_LIMITED_STATUS, "rate limited"
                )
            )
            job = state.job(claimed.job.job_id)
            if job.status != "running" or job.worker_id != claimed.attempt.worker_id:
                return job
            job.status = "queued"
            job.next_run_at = now + timedelta(seconds=delay)
            job.lease_until = None
            job.worker_id = None
            job.updated_at = now
            return job

        job = await self.store.mutate_run(claimed.job.run_id, _apply)
        logger.info(f"Job {job.job_id} ({job.step_id}) rate limited; deferred {delay:.1f}s")
        return job

    async def reclaim_stale(self) -> List[JobQueueEntry]:
        """Treat jobs whose lease expired as failed, retryable attempts."""
        now = self._now()
        reclaimed: List[JobQueueEntry] = []
        for stale in await self.store.stale_jobs(now):
            open_attempts = [
                a for a in await self.store.list_attempts(stale.job_id) if a.is_open
            ]

            def _apply(state: RunState, job_id: str = stale.job_id) -> JobQueueEntry | None:
                job = state.job(job_id)
                if (
                    job.status != "running"
                    or job.lease_until is None
                    or job.lease_until >= now
                ):
                    return None
                for attempt in open_attempts:
                    state.attempts.append(
                        _close_attempt(
                            attempt, now, False, NETWORK_FAILURE_STATUS, "lease expired"
                        )
                    )
                _record_failure(state, job, now, "lease expired", retryable=True)
                state.run.updated_at = now
                return job

            job = await self.store.mutate_run(stale.run_id, _apply)
            if job is not None:
                reclaimed.append(job)
        if reclaimed:
            logger.warning(f"Reclaimed {len(reclaimed)} job(s) with expired leases")
        return reclaimed

    async def sweep(self, run_id: str) -> List[JobQueueEntry]:
        """Queue any dependent whose dependencies are done but has no job yet."""
        now = self._now()

        def _apply(state: RunState) -> List[JobQueueEntry]:
            created = enqueue_ready(state, now)
            if created:
                state.run.updated_at = now
            _finish_run_if_complete(state, now)
            return created

        created = await self.store.mutate_run(run_id, _apply)
        if created:
            logger.warning(
                f"Sweep of run {run_id} queued missing steps {[j.step_id for j in created]}"
            )
        return created
