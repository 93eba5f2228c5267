"""Data models for persisted orchestration state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import JobAttempt, JobQueueEntry, WorkflowRun
from ..utils.time import utcnow


class RunState(BaseModel):
    """A run together with every job created for it so far.

    Stores hand this snapshot to a mutation callback inside one transaction
    and write back whatever the callback changed. ``attempts`` collects the
    attempt records the callback wants persisted.
    """

    run: WorkflowRun
    jobs: List[JobQueueEntry] = Field(default_factory=list)
    attempts: List[JobAttempt] = Field(default_factory=list)

    def job(self, job_id: str) -> JobQueueEntry:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        raise KeyError(job_id)

    def job_for_step(self, step_id: str) -> Optional[JobQueueEntry]:
        for job in self.jobs:
            if job.step_id == step_id:
                return job
        return None

    def done_step_ids(self) -> set[str]:
        return {job.step_id for job in self.jobs if job.status == "done"}


class ClaimedJob(BaseModel):
    """A job leased by a worker plus the attempt opened for it."""

    job: JobQueueEntry
    attempt: JobAttempt


class AuditEvent(BaseModel):
    """Append-only audit trail entry."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    intent_id: Optional[str] = None
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
