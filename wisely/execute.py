"""Job execution engine for wisely workflows."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import List, Optional

from .constants import (
    NETWORK_FAILURE_STATUS,
    WORKER_BATCH_SIZE,
    WORKER_LEASE_SECONDS,
    WORKER_POLL_INTERVAL_SECONDS,
)
from .contracts import JobQueueEntry
from .errors import WiselyError
from .jobs import JobQueue
from .persistence.models import ClaimedJob
from .tools.registry import ToolRegistry
from .tools.results import ToolResult
from .tools.transport import ToolRequest

logger = logging.getLogger(__name__)


class StepExecutor:
    """Turns a queued job into a tool invocation."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    def build_request(self, job: JobQueueEntry) -> ToolRequest:
        call = job.payload
        return ToolRequest(
            tool=call.tool,
            path=call.call_path,
            method=call.method,
            body=call.body,
            headers=call.headers,
            timeout_seconds=call.timeout_seconds,
            user_id=job.user_id,
            idempotency_key=call.idempotency_key or f"{job.run_id}-{job.step_id}",
            correlation_id=job.run_id,
        )

    async def execute(self, job: JobQueueEntry) -> ToolResult:
        return await self._registry.invoke(self.build_request(job))


class JobWorker:
    """Claims jobs from the queue and runs them until stopped."""

    def __init__(
        self,
        queue: JobQueue,
        executor: StepExecutor,
        worker_id: Optional[str] = None,
        lease_seconds: float = WORKER_LEASE_SECONDS,
        batch_size: int = WORKER_BATCH_SIZE,
        poll_interval: float = WORKER_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self.poll_interval = poll_interval

    async def run_once(self) -> int:
        """Claim one batch and process it. Returns the number of jobs handled."""
        claimed = await self.queue.claim(
            self.worker_id, lease_seconds=self.lease_seconds, limit=self.batch_size
        )
        results = await asyncio.gather(
            *(self._handle(job) for job in claimed), return_exceptions=True
        )
        for job, result in zip(claimed, results):
            if isinstance(result, Exception):
                # The lease stays in place; reclaim_stale retries the job later.
                logger.error(
                    f"Failed to record outcome of job {job.job.job_id} "
                    f"({job.job.step_id}): {result!r}"
                )
        return len(claimed)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll for work.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs
                indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Worker {self.worker_id} started")
        while lifespan is None or loop.time() - start_time < lifespan:
            try:
                await self.queue.reclaim_stale()
                handled = await self.run_once()
            except WiselyError:
                logger.exception(f"Worker {self.worker_id} poll failed, retrying")
                handled = 0
            if handled == 0:
                await asyncio.sleep(self.poll_interval)
        logger.info(f"Worker {self.worker_id} stopped")

    async def _handle(self, claimed: ClaimedJob) -> None:
        job = claimed.job
        try:
            result = await self.executor.execute(job)
        except Exception as e:
            logger.exception(f"Unexpected error executing job {job.job_id} ({job.step_id})")
            await self.queue.fail(
                claimed, str(e), status_code=NETWORK_FAILURE_STATUS, retryable=True
            )
            return

        if result.ok:
            await self.queue.complete(claimed, result.data, result.status_code or 200)
        elif result.rate_limited:
            await self.queue.defer(claimed, result.retry_after)
        else:
            await self.queue.fail(
                claimed,
                result.error or "Unknown error",
                status_code=result.status_code,
                retryable=result.degraded,
                retry_after=result.retry_after,
            )


class WorkerPool:
    """Run several :class:`JobWorker` instances side by side."""

    def __init__(
        self,
        queue: JobQueue,
        executor: StepExecutor,
        size: int = 1,
        name: str = "worker",
        **worker_options,
    ) -> None:
        self.workers: List[JobWorker] = [
            JobWorker(queue, executor, worker_id=f"{name}-{i}", **worker_options)
            for i in range(max(1, size))
        ]

    async def run_once(self) -> int:
        counts = await asyncio.gather(*(w.run_once() for w in self.workers))
        return sum(counts)

    async def start(self, lifespan: Optional[float] = None) -> None:
        await asyncio.gather(*(w.start(lifespan) for w in self.workers))
