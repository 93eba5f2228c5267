"""Persistence layer for wisely orchestration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WiselyConfig, load_config
from .inmemory import InMemoryStore
from .models import AuditEvent, ClaimedJob, RunState
from .postgres import PostgresStore
from .repository import (
    AuditStore,
    RateLimitStore,
    SessionStore,
    Store,
    WorkflowStore,
)
from .sqlite import SQLiteStore

_store_instance: Store | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[WiselyConfig] = None
) -> Store:
    """Factory function to obtain an orchestration store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``WISELY_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("WISELY_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "AuditEvent",
    "AuditStore",
    "ClaimedJob",
    "InMemoryStore",
    "PostgresStore",
    "RateLimitStore",
    "RunState",
    "SQLiteStore",
    "SessionStore",
    "Store",
    "WorkflowStore",
    "get_store",
]
