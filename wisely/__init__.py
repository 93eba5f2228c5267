"""Wisely: durable orchestration of daily learning workflows."""

from .contracts import JobQueueEntry, RetryPolicy, WorkflowRun, WorkflowSpec, WorkflowStep
from .dispatch import DispatchResult, WorkflowDispatcher
from .execute import JobWorker, StepExecutor, WorkerPool
from .jobs import JobQueue
from .persistence import get_store
from .ratelimit import RateLimiter
from .services import Services, build_services
from .session import SessionStateMachine
from .tools import ToolRegistry, ToolTransport

__version__ = "0.1.0"
__all__ = [
    "DispatchResult",
    "JobQueue",
    "JobQueueEntry",
    "JobWorker",
    "RateLimiter",
    "RetryPolicy",
    "Services",
    "SessionStateMachine",
    "StepExecutor",
    "ToolRegistry",
    "ToolTransport",
    "WorkerPool",
    "WorkflowDispatcher",
    "WorkflowRun",
    "WorkflowSpec",
    "WorkflowStep",
    "build_services",
    "get_store",
]
