"""PostgreSQL implementation of the orchestration store."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import JobAttempt, JobQueueEntry, StepCall, WorkflowRun, WorkflowSpec
from ..errors import StoreError
from ..ratelimit.models import RateLimitBucket
from ..session.models import Artifact, EducationSession
from ..utils.time import utcnow
from .models import AuditEvent, ClaimedJob, RunState
from .repository import BucketMutation, RunMutation, SessionMutation, Store, T

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_runs (
    run_id TEXT PRIMARY KEY,
    workflow_key TEXT NOT NULL,
    user_id TEXT NOT NULL,
    intent_id TEXT,
    trigger_event_id TEXT,
    status TEXT NOT NULL,
    spec JSONB NOT NULL,
    payload JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS job_queue (
    job_id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES workflow_runs(run_id),
    step_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    intent_id TEXT,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    attempts INTEGER NOT NULL,
    max_attempts INTEGER NOT NULL,
    next_run_at TIMESTAMPTZ NOT NULL,
    lease_until TIMESTAMPTZ,
    worker_id TEXT,
    payload JSONB NOT NULL,
    output JSONB,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (run_id, step_id)
);
CREATE INDEX IF NOT EXISTS job_queue_ready ON job_queue (status, priority, next_run_at);
CREATE TABLE IF NOT EXISTS job_attempts (
    attempt_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES job_queue(job_id),
    attempt_number INTEGER NOT NULL,
    worker_id TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    success BOOLEAN,
    status_code INTEGER,
    error_text TEXT
);
CREATE TABLE IF NOT EXISTS rate_limits (
    rl_key TEXT PRIMARY KEY,
    tokens DOUBLE PRECISION NOT NULL,
    capacity DOUBLE PRECISION NOT NULL,
    refill_rate DOUBLE PRECISION NOT NULL,
    last_refill TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS education_sessions (
    session_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    week INTEGER NOT NULL,
    day INTEGER NOT NULL,
    phase TEXT NOT NULL,
    artifacts JSONB NOT NULL,
    etag TEXT,
    busy_until TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (user_id, week, day)
);
CREATE TABLE IF NOT EXISTS audit_events (
    event_id TEXT PRIMARY KEY,
    user_id TEXT,
    intent_id TEXT,
    type TEXT NOT NULL,
    payload JSONB,
    created_at TIMESTAMPTZ NOT NULL
);
"""


def _load(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


class PostgresStore(Store):
    """Persist orchestration state using PostgreSQL.

    Claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers never block on
    or double-claim a job; every read-modify-write takes a ``FOR UPDATE`` row
    lock on the row it changes.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
                async with self._pool.acquire() as conn:
                    await conn.execute(_SCHEMA)
            except (OSError, asyncpg.PostgresError) as e:
                raise StoreError(f"Cannot connect to Postgres: {e}") from e
            logger.info("Postgres store connected")
        return self._pool

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            raise StoreError(f"Postgres query failed: {e}") from e

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _run_from_row(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            workflow_key=row["workflow_key"],
            user_id=row["user_id"],
            intent_id=row["intent_id"],
            trigger_event_id=row["trigger_event_id"],
            status=row["status"],
            spec=WorkflowSpec.model_validate(_load(row["spec"])),
            payload=_load(row["payload"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
        )

    @staticmethod
    def _job_from_row(row: asyncpg.Record) -> JobQueueEntry:
        return JobQueueEntry(
            job_id=row["job_id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            user_id=row["user_id"],
            intent_id=row["intent_id"],
            status=row["status"],
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_run_at=row["next_run_at"],
            lease_until=row["lease_until"],
            worker_id=row["worker_id"],
            payload=StepCall.model_validate(_load(row["payload"])),
            output=_load(row["output"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _attempt_from_row(row: asyncpg.Record) -> JobAttempt:
        return JobAttempt(**dict(row))

    @staticmethod
    def _bucket_from_row(row: asyncpg.Record) -> RateLimitBucket:
        return RateLimitBucket(
            key=row["rl_key"],
            tokens=row["tokens"],
            capacity=row["capacity"],
            refill_rate=row["refill_rate"],
            last_refill_at=row["last_refill"],
        )

    @staticmethod
    def _session_from_row(row: asyncpg.Record) -> EducationSession:
        artifacts = _load(row["artifacts"]) or {}
        return EducationSession(
            session_id=row["session_id"],
            user_id=row["user_id"],
            week=row["week"],
            day=row["day"],
            phase=row["phase"],
            artifacts={k: Artifact.model_validate(v) for k, v in artifacts.items()},
            etag=row["etag"],
            busy_until=row["busy_until"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Write helpers (called inside a transaction)
    @staticmethod
    async def _upsert_run(conn: asyncpg.Connection, run: WorkflowRun) -> None:
        await conn.execute(
            """
            INSERT INTO workflow_runs (run_id, workflow_key, user_id, intent_id,
                trigger_event_id, status, spec, payload, created_at, updated_at, finished_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (run_id) DO UPDATE SET
                status = EXCLUDED.status,
                payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at,
                finished_at = EXCLUDED.finished_at
            """,
            run.run_id,
            run.workflow_key,
            run.user_id,
            run.intent_id,
            run.trigger_event_id,
            run.status,
            run.spec.model_dump_json(),
            json.dumps(run.payload),
            run.created_at,
            run.updated_at,
            run.finished_at,
        )

    @staticmethod
    async def _upsert_job(conn: asyncpg.Connection, job: JobQueueEntry) -> None:
        await conn.execute(
            """
            INSERT INTO job_queue (job_id, run_id, step_id, user_id, intent_id, status,
                priority, attempts, max_attempts, next_run_at, lease_until, worker_id,
                payload, output, last_error, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            ON CONFLICT (job_id) DO UPDATE SET
                status = EXCLUDED.status,
                priority = EXCLUDED.priority,
                attempts = EXCLUDED.attempts,
                next_run_at = EXCLUDED.next_run_at,
                lease_until = EXCLUDED.lease_until,
                worker_id = EXCLUDED.worker_id,
                payload = EXCLUDED.payload,
                output = EXCLUDED.output,
                last_error = EXCLUDED.last_error,
                updated_at = EXCLUDED.updated_at
            """,
            job.job_id,
            job.run_id,
            job.step_id,
            job.user_id,
            job.intent_id,
            job.status,
            job.priority,
            job.attempts,
            job.max_attempts,
            job.next_run_at,
            job.lease_until,
            job.worker_id,
            job.payload.model_dump_json(),
            _dump(job.output),
            job.last_error,
            job.created_at,
            job.updated_at,
        )

    @staticmethod
    async def _upsert_attempt(conn: asyncpg.Connection, attempt: JobAttempt) -> None:
        await conn.execute(
            """
            INSERT INTO job_attempts (attempt_id, job_id, attempt_number, worker_id,
                started_at, finished_at, success, status_code, error_text)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (attempt_id) DO UPDATE SET
                finished_at = EXCLUDED.finished_at,
                success = EXCLUDED.success,
                status_code = EXCLUDED.status_code,
                error_text = EXCLUDED.error_text
            """,
            attempt.attempt_id,
            attempt.job_id,
            attempt.attempt_number,
            attempt.worker_id,
            attempt.started_at,
            attempt.finished_at,
            attempt.success,
            attempt.status_code,
            attempt.error_text,
        )

    # ------------------------------------------------------------------
    # Workflow runs and jobs
    async def create_run(self, run: WorkflowRun, jobs: list[JobQueueEntry]) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._upsert_run(conn, run)
                    for job in jobs:
                        await self._upsert_job(conn, job)
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to create run {run.run_id}: {e}") from e

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        rows = await self._fetch("SELECT * FROM workflow_runs WHERE run_id = $1", run_id)
        return self._run_from_row(rows[0]) if rows else None

    async def list_runs(
        self,
        user_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        rows = await self._fetch(
            """
            SELECT * FROM workflow_runs
            WHERE ($1::text IS NULL OR user_id = $1) AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC LIMIT $3
            """,
            user_id,
            status,
            limit,
        )
        return [self._run_from_row(r) for r in rows]

    async def list_jobs(
        self,
        run_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[JobQueueEntry]:
        rows = await self._fetch(
            """
            SELECT * FROM job_queue
            WHERE ($1::text IS NULL OR run_id = $1)
              AND ($2::text IS NULL OR user_id = $2)
              AND ($3::text IS NULL OR status = $3)
            ORDER BY created_at
            """,
            run_id,
            user_id,
            status,
        )
        return [self._job_from_row(r) for r in rows]

    async def list_attempts(self, job_id: str) -> list[JobAttempt]:
        rows = await self._fetch(
            "SELECT * FROM job_attempts WHERE job_id = $1 ORDER BY attempt_number, started_at",
            job_id,
        )
        return [self._attempt_from_row(r) for r in rows]

    async def claim_jobs(self, now, worker_id, lease_until, limit) -> list[ClaimedJob]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    rows = await conn.fetch(
                        """
                        SELECT j.* FROM job_queue j
                        WHERE j.status = 'queued' AND j.next_run_at <= $1
                          AND NOT EXISTS (
                            SELECT 1
                            FROM jsonb_array_elements_text(j.payload -> 'depends_on') AS dep(step_id)
                            WHERE NOT EXISTS (
                                SELECT 1 FROM job_queue d
                                WHERE d.run_id = j.run_id
                                  AND d.step_id = dep.step_id
                                  AND d.status = 'done'
                            )
                          )
                        ORDER BY j.priority, j.next_run_at
                        LIMIT $2
                        FOR UPDATE SKIP LOCKED
                        """,
                        now,
                        limit,
                    )
                    claimed: list[ClaimedJob] = []
                    for row in rows:
                        job = self._job_from_row(row)
                        count = await conn.fetchval(
                            "SELECT COUNT(*) FROM job_attempts WHERE job_id = $1",
                            job.job_id,
                        )
                        job.status = "running"
                        job.worker_id = worker_id
                        job.lease_until = lease_until
                        job.updated_at = now
                        attempt = JobAttempt(
                            job_id=job.job_id,
                            attempt_number=count + 1,
                            worker_id=worker_id,
                            started_at=now,
                        )
                        await self._upsert_job(conn, job)
                        await self._upsert_attempt(conn, attempt)
                        claimed.append(ClaimedJob(job=job, attempt=attempt))
                    return claimed
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to claim jobs: {e}") from e

    async def stale_jobs(self, now) -> list[JobQueueEntry]:
        rows = await self._fetch(
            "SELECT * FROM job_queue WHERE status = 'running' AND lease_until < $1",
            now,
        )
        return [self._job_from_row(r) for r in rows]

    async def mutate_run(self, run_id: str, mutation: RunMutation[T]) -> T:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT * FROM workflow_runs WHERE run_id = $1 FOR UPDATE",
                        run_id,
                    )
                    if row is None:
                        raise StoreError(f"Run {run_id} not found")
                    job_rows = await conn.fetch(
                        "SELECT * FROM job_queue WHERE run_id = $1 ORDER BY created_at FOR UPDATE",
                        run_id,
                    )
                    state = RunState(
                        run=self._run_from_row(row),
                        jobs=[self._job_from_row(r) for r in job_rows],
                    )
                    result = mutation(state)
                    await self._upsert_run(conn, state.run)
                    for job in state.jobs:
                        await self._upsert_job(conn, job)
                    for attempt in state.attempts:
                        await self._upsert_attempt(conn, attempt)
                    return result
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to update run {run_id}: {e}") from e

    # ------------------------------------------------------------------
    # Rate limits
    async def modify_bucket(self, key: str, mutation: BucketMutation[T]) -> T:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Row locks cannot cover a bucket that does not exist yet.
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", key
                    )
                    row = await conn.fetchrow(
                        "SELECT * FROM rate_limits WHERE rl_key = $1 FOR UPDATE", key
                    )
                    bucket, result = mutation(self._bucket_from_row(row) if row else None)
                    await conn.execute(
                        """
                        INSERT INTO rate_limits (rl_key, tokens, capacity, refill_rate, last_refill)
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT (rl_key) DO UPDATE SET
                            tokens = EXCLUDED.tokens,
                            capacity = EXCLUDED.capacity,
                            refill_rate = EXCLUDED.refill_rate,
                            last_refill = EXCLUDED.last_refill
                        """,
                        key,
                        bucket.tokens,
                        bucket.capacity,
                        bucket.refill_rate,
                        bucket.last_refill_at,
                    )
                    return result
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to update rate limit {key}: {e}") from e

    async def get_bucket(self, key: str) -> RateLimitBucket | None:
        rows = await self._fetch("SELECT * FROM rate_limits WHERE rl_key = $1", key)
        return self._bucket_from_row(rows[0]) if rows else None

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Row locks cannot cover a session that does not exist yet.
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"session:{user_id}:{week}:{day}",
                    )
                    row = await conn.fetchrow(
                        """
                        SELECT * FROM education_sessions
                        WHERE user_id = $1 AND week = $2 AND day = $3 FOR UPDATE
                        """,
                        user_id,
                        week,
                        day,
                    )
                    session = (
                        self._session_from_row(row)
                        if row
                        else EducationSession(
                            user_id=user_id,
                            week=week,
                            day=day,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    )
                    result = mutation(session)
                    session.updated_at = stamp
                    await conn.execute(
                        """
                        INSERT INTO education_sessions (session_id, user_id, week, day,
                            phase, artifacts, etag, busy_until, created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                        ON CONFLICT (user_id, week, day) DO UPDATE SET
                            phase = EXCLUDED.phase,
                            artifacts = EXCLUDED.artifacts,
                            etag = EXCLUDED.etag,
                            busy_until = EXCLUDED.busy_until,
                            updated_at = EXCLUDED.updated_at
                        """,
                        session.session_id,
                        user_id,
                        week,
                        day,
                        session.phase,
                        json.dumps(
                            {
                                k: v.model_dump(mode="json")
                                for k, v in session.artifacts.items()
                            }
                        ),
                        session.etag,
                        session.busy_until,
                        session.created_at,
                        session.updated_at,
                    )
                    return result
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to update session for {user_id}: {e}") from e

    async def get_session(
        self, user_id: str, week: int, day: int
    ) -> EducationSession | None:
        rows = await self._fetch(
            "SELECT * FROM education_sessions WHERE user_id = $1 AND week = $2 AND day = $3",
            user_id,
            week,
            day,
        )
        return self._session_from_row(rows[0]) if rows else None

    async def list_sessions(self, user_id: str) -> list[EducationSession]:
        rows = await self._fetch(
            "SELECT * FROM education_sessions WHERE user_id = $1 ORDER BY updated_at DESC",
            user_id,
        )
        return [self._session_from_row(r) for r in rows]

    async def list_user_ids(self) -> list[str]:
        rows = await self._fetch(
            "SELECT user_id FROM workflow_runs "
            "UNION SELECT user_id FROM education_sessions ORDER BY user_id"
        )
        return [r["user_id"] for r in rows]

    # ------------------------------------------------------------------
    # Audit
    async def record_event(self, event: AuditEvent) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_events (event_id, user_id, intent_id, type, payload, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    event.event_id,
                    event.user_id,
                    event.intent_id,
                    event.type,
                    json.dumps(event.payload),
                    event.created_at,
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to record audit event: {e}") from e

    async def list_events(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        rows = await self._fetch(
            """
            SELECT * FROM audit_events WHERE ($1::text IS NULL OR user_id = $1)
            ORDER BY created_at DESC LIMIT $2
            """,
            user_id,
            limit,
        )
        return [
            AuditEvent(
                event_id=r["event_id"],
                user_id=r["user_id"],
                intent_id=r["intent_id"],
                type=r["type"],
                payload=_load(r["payload"]) or {},
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
