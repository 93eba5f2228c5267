from __future__ import annotations

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BUCKET_CAPACITY,
    DEFAULT_REFILL_RATE,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    RATE_LIMIT_REQUEUE_DELAY_SECONDS,
    SESSION_EVENT_LEASE_SECONDS,
    WORKER_BATCH_SIZE,
    WORKER_LEASE_SECONDS,
    WORKER_POLL_INTERVAL_SECONDS,
)


class RateLimitSettings(BaseModel):
    """Default token bucket used when a key has no specific limit."""

    capacity: int = DEFAULT_BUCKET_CAPACITY
    refill_rate: float = DEFAULT_REFILL_RATE


class ToolSettings(BaseModel):
    """Where reasoning services live and how to reach them."""

    base_url: str = "http://localhost:54321"
    service_token: Optional[str] = None
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    rate_limits: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-tool calls-per-minute overrides keyed by tool name",
    )


class WorkerSettings(BaseModel):
    """Job worker polling behaviour."""

    batch_size: int = WORKER_BATCH_SIZE
    lease_seconds: float = WORKER_LEASE_SECONDS
    poll_interval: float = WORKER_POLL_INTERVAL_SECONDS
    rate_limit_delay: float = RATE_LIMIT_REQUEUE_DELAY_SECONDS
    concurrency: int = 1


class WorkflowSettings(BaseModel):
    """Location of external workflow definitions."""

    directory: Optional[str] = None


class SessionSettings(BaseModel):
    event_lease_seconds: float = SESSION_EVENT_LEASE_SECONDS


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class WiselyConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    rate_limit: RateLimitSettings = RateLimitSettings()
    tools: ToolSettings = ToolSettings()
    worker: WorkerSettings = WorkerSettings()
    workflows: WorkflowSettings = WorkflowSettings()
    session: SessionSettings = SessionSettings()
    server: ServerSettings = ServerSettings()


def load_config(path: Optional[str] = None) -> WiselyConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WISELY_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("WISELY_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WiselyConfig(**data)
    else:
        config = WiselyConfig()

    env_db_url = os.getenv("WISELY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if base_url := os.getenv("WISELY_TOOLS_BASE_URL"):
        config.tools.base_url = base_url
    if token := os.getenv("WISELY_SERVICE_TOKEN"):
        config.tools.service_token = token
    if workflows_dir := os.getenv("WISELY_WORKFLOWS_DIR"):
        config.workflows.directory = workflows_dir
    if log_level := os.getenv("WISELY_LOG_LEVEL"):
        config.log_level = log_level
    return config
