"""Wiring of wisely components from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .config import WiselyConfig, load_config
from .cron import CronScheduler
from .dispatch import WorkflowDispatcher
from .execute import StepExecutor, WorkerPool
from .jobs import JobQueue
from .persistence import Store, get_store
from .ratelimit import RateLimitConfig, RateLimiter
from .session.machine import SessionStateMachine
from .status import StatusService
from .tools.registry import ToolRegistry
from .tools.transport import ToolTransport
from .utils.time import Clock, utcnow
from .workflows.loader import WorkflowLoader


@dataclass
class Services:
    """Every long-lived component, sharing one store and one HTTP client."""

    config: WiselyConfig
    store: Store
    transport: ToolTransport
    limiter: RateLimiter
    registry: ToolRegistry
    loader: WorkflowLoader
    queue: JobQueue
    dispatcher: WorkflowDispatcher
    machine: SessionStateMachine
    status: StatusService
    cron: CronScheduler

    def worker_pool(self, size: Optional[int] = None) -> WorkerPool:
        worker = self.config.worker
        return WorkerPool(
            self.queue,
            StepExecutor(self.registry),
            size=size or worker.concurrency,
            lease_seconds=worker.lease_seconds,
            batch_size=worker.batch_size,
            poll_interval=worker.poll_interval,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()
        await self.store.close()


def build_services(
    config: Optional[WiselyConfig] = None,
    store: Optional[Store] = None,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[Clock] = None,
) -> Services:
    """Assemble the components described by ``config``.

    Args:
        config: Loaded configuration; read from disk when omitted.
        store: Store to use instead of the one selected by ``database_url``.
        client: HTTP client for tool calls, e.g. one backed by a mock transport.
        now: Clock shared by every component.
    """
    config = config or load_config()
    store = store or get_store(config=config)
    now = now or utcnow

    transport = ToolTransport(
        config.tools.base_url,
        service_token=config.tools.service_token,
        timeout=config.tools.timeout_seconds,
        client=client,
    )
    limiter = RateLimiter(
        store,
        RateLimitConfig(
            capacity=config.rate_limit.capacity,
            refill_rate=config.rate_limit.refill_rate,
        ),
        now=now,
    )
    registry = ToolRegistry(transport, limiter, rate_limits=config.tools.rate_limits)
    loader = WorkflowLoader.from_config(config)
    queue = JobQueue(store, now=now, rate_limit_delay=config.worker.rate_limit_delay)
    dispatcher = WorkflowDispatcher(store, loader, audit=store, now=now)
    machine = SessionStateMachine(
        store,
        registry,
        audit=store,
        now=now,
        lease_seconds=config.session.event_lease_seconds,
    )
    return Services(
        config=config,
        store=store,
        transport=transport,
        limiter=limiter,
        registry=registry,
        loader=loader,
        queue=queue,
        dispatcher=dispatcher,
        machine=machine,
        status=StatusService(store, loader, now=now),
        cron=CronScheduler(dispatcher, loader, now=now),
    )
