"""SQLite implementation of the orchestration store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from ..contracts import JobAttempt, JobQueueEntry, StepCall, WorkflowRun, WorkflowSpec
from ..errors import StoreError
from ..ratelimit.models import RateLimitBucket
from ..session.models import Artifact, EducationSession
from ..utils.time import utcnow
from .models import AuditEvent, ClaimedJob, RunState
from .repository import BucketMutation, RunMutation, SessionMutation, Store, T

R = TypeVar("R")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        run_id TEXT PRIMARY KEY,
        workflow_key TEXT NOT NULL,
        user_id TEXT NOT NULL,
        intent_id TEXT,
        trigger_event_id TEXT,
        status TEXT NOT NULL,
        spec TEXT NOT NULL,
        payload TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        finished_at TEXT
    )
    """,
    """
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
        next_run_at TEXT NOT NULL,
        lease_until TEXT,
        worker_id TEXT,
        payload TEXT NOT NULL,
        output TEXT,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (run_id, step_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS job_queue_ready ON job_queue (status, priority, next_run_at)",
    """
    CREATE TABLE IF NOT EXISTS job_attempts (
        attempt_id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES job_queue(job_id),
        attempt_number INTEGER NOT NULL,
        worker_id TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        success INTEGER,
        status_code INTEGER,
        error_text TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        rl_key TEXT PRIMARY KEY,
        tokens REAL NOT NULL,
        capacity REAL NOT NULL,
        refill_rate REAL NOT NULL,
        last_refill TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS education_sessions (
        session_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        week INTEGER NOT NULL,
        day INTEGER NOT NULL,
        phase TEXT NOT NULL,
        artifacts TEXT NOT NULL,
        etag TEXT,
        busy_until TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, week, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id TEXT PRIMARY KEY,
        user_id TEXT,
        intent_id TEXT,
        type TEXT NOT NULL,
        payload TEXT,
        created_at TEXT NOT NULL
    )
    """,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so that string comparison in SQL matches time order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class SQLiteStore(Store):
    """Persist orchestration state using SQLite.

    Every write runs inside ``BEGIN IMMEDIATE`` so that read-modify-write
    sequences (claims, bucket updates, run mutations) hold the database write
    lock from their first read to their commit.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            for statement in _SCHEMA:
                cur.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], R]) -> R:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                result = work(cur)
                cur.execute("COMMIT")
                return result
            except sqlite3.Error as e:
                self._rollback(cur)
                raise StoreError(f"SQLite operation failed: {e}") from e
            except BaseException:
                self._rollback(cur)
                raise

    @staticmethod
    def _rollback(cur: sqlite3.Cursor) -> None:
        if cur.connection.in_transaction:
            cur.execute("ROLLBACK")

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"SQLite query failed: {e}") from e

    async def _run(self, work: Callable[[sqlite3.Cursor], R]) -> R:
        return await asyncio.to_thread(self._transaction, work)

    async def _query(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchall, query, *params)

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            workflow_key=row["workflow_key"],
            user_id=row["user_id"],
            intent_id=row["intent_id"],
            trigger_event_id=row["trigger_event_id"],
            status=row["status"],
            spec=WorkflowSpec.model_validate_json(row["spec"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            finished_at=_dt(row["finished_at"]),
        )

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> JobQueueEntry:
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
            next_run_at=_dt(row["next_run_at"]),
            lease_until=_dt(row["lease_until"]),
            worker_id=row["worker_id"],
            payload=StepCall.model_validate_json(row["payload"]),
            output=json.loads(row["output"]) if row["output"] is not None else None,
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _attempt_from_row(row: sqlite3.Row) -> JobAttempt:
        return JobAttempt(
            attempt_id=row["attempt_id"],
            job_id=row["job_id"],
            attempt_number=row["attempt_number"],
            worker_id=row["worker_id"],
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            success=None if row["success"] is None else bool(row["success"]),
            status_code=row["status_code"],
            error_text=row["error_text"],
        )

    @staticmethod
    def _bucket_from_row(row: sqlite3.Row) -> RateLimitBucket:
        return RateLimitBucket(
            key=row["rl_key"],
            tokens=row["tokens"],
            capacity=row["capacity"],
            refill_rate=row["refill_rate"],
            last_refill_at=_dt(row["last_refill"]),
        )

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> EducationSession:
        artifacts = json.loads(row["artifacts"]) if row["artifacts"] else {}
        return EducationSession(
            session_id=row["session_id"],
            user_id=row["user_id"],
            week=row["week"],
            day=row["day"],
            phase=row["phase"],
            artifacts={k: Artifact.model_validate(v) for k, v in artifacts.items()},
            etag=row["etag"],
            busy_until=_dt(row["busy_until"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Write helpers (called inside a transaction)
    @staticmethod
    def _upsert_run(cur: sqlite3.Cursor, run: WorkflowRun) -> None:
        cur.execute(
            """
            INSERT INTO workflow_runs (run_id, workflow_key, user_id, intent_id,
                trigger_event_id, status, spec, payload, created_at, updated_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (run_id) DO UPDATE SET
                status = excluded.status,
                payload = excluded.payload,
                updated_at = excluded.updated_at,
                finished_at = excluded.finished_at
            """,
            (
                run.run_id,
                run.workflow_key,
                run.user_id,
                run.intent_id,
                run.trigger_event_id,
                run.status,
                run.spec.model_dump_json(),
                json.dumps(run.payload),
                _ts(run.created_at),
                _ts(run.updated_at),
                _ts(run.finished_at),
            ),
        )

    @staticmethod
    def _upsert_job(cur: sqlite3.Cursor, job: JobQueueEntry) -> None:
        cur.execute(
            """
            INSERT INTO job_queue (job_id, run_id, step_id, user_id, intent_id, status,
                priority, attempts, max_attempts, next_run_at, lease_until, worker_id,
                payload, output, last_error, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (job_id) DO UPDATE SET
                status = excluded.status,
                priority = excluded.priority,
                attempts = excluded.attempts,
                next_run_at = excluded.next_run_at,
                lease_until = excluded.lease_until,
                worker_id = excluded.worker_id,
                payload = excluded.payload,
                output = excluded.output,
                last_error = excluded.last_error,
                updated_at = excluded.updated_at
            """,
            (
                job.job_id,
                job.run_id,
                job.step_id,
                job.user_id,
                job.intent_id,
                job.status,
                job.priority,
                job.attempts,
                job.max_attempts,
                _ts(job.next_run_at),
                _ts(job.lease_until),
                job.worker_id,
                job.payload.model_dump_json(),
                _json(job.output),
                job.last_error,
                _ts(job.created_at),
                _ts(job.updated_at),
            ),
        )

    @staticmethod
    def _upsert_attempt(cur: sqlite3.Cursor, attempt: JobAttempt) -> None:
        cur.execute(
            """
            INSERT INTO job_attempts (attempt_id, job_id, attempt_number, worker_id,
                started_at, finished_at, success, status_code, error_text)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (attempt_id) DO UPDATE SET
                finished_at = excluded.finished_at,
                success = excluded.success,
                status_code = excluded.status_code,
                error_text = excluded.error_text
            """,
            (
                attempt.attempt_id,
                attempt.job_id,
                attempt.attempt_number,
                attempt.worker_id,
                _ts(attempt.started_at),
                _ts(attempt.finished_at),
                None if attempt.success is None else int(attempt.success),
                attempt.status_code,
                attempt.error_text,
            ),
        )

    # ------------------------------------------------------------------
    # Workflow runs and jobs
    async def create_run(self, run: WorkflowRun, jobs: list[JobQueueEntry]) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            self._upsert_run(cur, run)
            for job in jobs:
                self._upsert_job(cur, job)

        await self._run(work)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        rows = await self._query("SELECT * FROM workflow_runs WHERE run_id = ?", run_id)
        return self._run_from_row(rows[0]) if rows else None

    async def list_runs(
        self,
        user_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        rows = await self._query(
            """
            SELECT * FROM workflow_runs
            WHERE (? IS NULL OR user_id = ?) AND (? IS NULL OR status = ?)
            ORDER BY created_at DESC LIMIT ?
            """,
            user_id,
            user_id,
            status,
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
        rows = await self._query(
            """
            SELECT * FROM job_queue
            WHERE (? IS NULL OR run_id = ?)
              AND (? IS NULL OR user_id = ?)
              AND (? IS NULL OR status = ?)
            ORDER BY created_at, rowid
            """,
            run_id,
            run_id,
            user_id,
            user_id,
            status,
            status,
        )
        return [self._job_from_row(r) for r in rows]

    async def list_attempts(self, job_id: str) -> list[JobAttempt]:
        rows = await self._query(
            "SELECT * FROM job_attempts WHERE job_id = ? ORDER BY attempt_number, started_at",
            job_id,
        )
        return [self._attempt_from_row(r) for r in rows]

    async def claim_jobs(
        self, now: datetime, worker_id: str, lease_until: datetime, limit: int
    ) -> list[ClaimedJob]:
        def work(cur: sqlite3.Cursor) -> list[ClaimedJob]:
            cur.execute(
                """
                SELECT * FROM job_queue
                WHERE status = 'queued' AND next_run_at <= ?
                ORDER BY priority, next_run_at
                """,
                (_ts(now),),
            )
            claimed: list[ClaimedJob] = []
            for row in cur.fetchall():
                if len(claimed) >= limit:
                    break
                job = self._job_from_row(row)
                cur.execute(
                    "SELECT step_id FROM job_queue WHERE run_id = ? AND status = 'done'",
                    (job.run_id,),
                )
                done = {r["step_id"] for r in cur.fetchall()}
                if not job.is_eligible(now, done):
                    continue
                cur.execute(
                    """
                    UPDATE job_queue
                    SET status = 'running', worker_id = ?, lease_until = ?, updated_at = ?
                    WHERE job_id = ? AND status = 'queued'
                    """,
                    (worker_id, _ts(lease_until), _ts(now), job.job_id),
                )
                if cur.rowcount != 1:
                    continue
                cur.execute(
                    "SELECT COUNT(*) AS n FROM job_attempts WHERE job_id = ?",
                    (job.job_id,),
                )
                attempt = JobAttempt(
                    job_id=job.job_id,
                    attempt_number=cur.fetchone()["n"] + 1,
                    worker_id=worker_id,
                    started_at=now,
                )
                self._upsert_attempt(cur, attempt)
                job.status = "running"
                job.worker_id = worker_id
                job.lease_until = lease_until
                job.updated_at = now
                claimed.append(ClaimedJob(job=job, attempt=attempt))
            return claimed

        return await self._run(work)

    async def stale_jobs(self, now: datetime) -> list[JobQueueEntry]:
        rows = await self._query(
            "SELECT * FROM job_queue WHERE status = 'running' AND lease_until < ?",
            _ts(now),
        )
        return [self._job_from_row(r) for r in rows]

    async def mutate_run(self, run_id: str, mutation: RunMutation[T]) -> T:
        def work(cur: sqlite3.Cursor) -> T:
            cur.execute("SELECT * FROM workflow_runs WHERE run_id = ?", (run_id,))
            row = cur.fetchone()
            if row is None:
                raise StoreError(f"Run {run_id} not found")
            cur.execute(
                "SELECT * FROM job_queue WHERE run_id = ? ORDER BY created_at, rowid",
                (run_id,),
            )
            state = RunState(
                run=self._run_from_row(row),
                jobs=[self._job_from_row(r) for r in cur.fetchall()],
            )
            result = mutation(state)
            self._upsert_run(cur, state.run)
            for job in state.jobs:
                self._upsert_job(cur, job)
            for attempt in state.attempts:
                self._upsert_attempt(cur, attempt)
            return result

        return await self._run(work)

    # ------------------------------------------------------------------
    # Rate limits
    async def modify_bucket(self, key: str, mutation: BucketMutation[T]) -> T:
        def work(cur: sqlite3.Cursor) -> T:
            cur.execute("SELECT * FROM rate_limits WHERE rl_key = ?", (key,))
            row = cur.fetchone()
            bucket, result = mutation(self._bucket_from_row(row) if row else None)
            cur.execute(
                """
                INSERT INTO rate_limits (rl_key, tokens, capacity, refill_rate, last_refill)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (rl_key) DO UPDATE SET
                    tokens = excluded.tokens,
                    capacity = excluded.capacity,
                    refill_rate = excluded.refill_rate,
                    last_refill = excluded.last_refill
                """,
                (
                    key,
                    bucket.tokens,
                    bucket.capacity,
                    bucket.refill_rate,
                    _ts(bucket.last_refill_at),
                ),
            )
            return result

        return await self._run(work)

    async def get_bucket(self, key: str) -> RateLimitBucket | None:
        rows = await self._query("SELECT * FROM rate_limits WHERE rl_key = ?", key)
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

        def work(cur: sqlite3.Cursor) -> T:
            cur.execute(
                "SELECT * FROM education_sessions WHERE user_id = ? AND week = ? AND day = ?",
                (user_id, week, day),
            )
            row = cur.fetchone()
            session = (
                self._session_from_row(row)
                if row
                else EducationSession(
                    user_id=user_id, week=week, day=day, created_at=stamp, updated_at=stamp
                )
            )
            result = mutation(session)
            session.updated_at = stamp
            cur.execute(
                """
                INSERT INTO education_sessions (session_id, user_id, week, day, phase,
                    artifacts, etag, busy_until, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, week, day) DO UPDATE SET
                    phase = excluded.phase,
                    artifacts = excluded.artifacts,
                    etag = excluded.etag,
                    busy_until = excluded.busy_until,
                    updated_at = excluded.updated_at
                """,
                (
                    session.session_id,
                    user_id,
                    week,
                    day,
                    session.phase,
                    json.dumps(
                        {k: v.model_dump(mode="json") for k, v in session.artifacts.items()}
                    ),
                    session.etag,
                    _ts(session.busy_until),
                    _ts(session.created_at),
                    _ts(session.updated_at),
                ),
            )
            return result

        return await self._run(work)

    async def get_session(
        self, user_id: str, week: int, day: int
    ) -> EducationSession | None:
        rows = await self._query(
            "SELECT * FROM education_sessions WHERE user_id = ? AND week = ? AND day = ?",
            user_id,
            week,
            day,
        )
        return self._session_from_row(rows[0]) if rows else None

    async def list_sessions(self, user_id: str) -> list[EducationSession]:
        rows = await self._query(
            "SELECT * FROM education_sessions WHERE user_id = ? ORDER BY updated_at DESC",
            user_id,
        )
        return [self._session_from_row(r) for r in rows]

    async def list_user_ids(self) -> list[str]:
        rows = await self._query(
            "SELECT user_id FROM workflow_runs "
            "UNION SELECT user_id FROM education_sessions ORDER BY user_id"
        )
        return [r["user_id"] for r in rows]

    # ------------------------------------------------------------------
    # Audit
    async def record_event(self, event: AuditEvent) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT INTO audit_events (event_id, user_id, intent_id, type, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.user_id,
                    event.intent_id,
                    event.type,
                    json.dumps(event.payload),
                    _ts(event.created_at),
                ),
            )

        await self._run(work)

    async def list_events(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        rows = await self._query(
            """
            SELECT * FROM audit_events WHERE (? IS NULL OR user_id = ?)
            ORDER BY created_at DESC, rowid DESC LIMIT ?
            """,
            user_id,
            user_id,
            limit,
        )
        return [
            AuditEvent(
                event_id=r["event_id"],
                user_id=r["user_id"],
                intent_id=r["intent_id"],
                type=r["type"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
