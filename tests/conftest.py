"""Shared fixtures: a controllable clock and a scripted tool gateway."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from wisely.config import WiselyConfig
from wisely.contracts import WorkflowSpec
from wisely.persistence import InMemoryStore
from wisely.services import Services, build_services
from wisely.workflows.loader import WorkflowLoader, parse_workflow


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 7, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ToolServer:
    """Scripted stand-in for the reasoning service gateway.

    Responses are keyed by the request body's ``action`` when present and by
    URL path otherwise. The last scripted response for a key repeats.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: Dict[str, List[Any]] = {}

    def script(self, key: str, *responses: Any) -> None:
        self._routes.setdefault(key, []).extend(responses)

    def bodies(self) -> List[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else None
        key = body.get("action") if isinstance(body, dict) else None
        queue = self._routes.get(key) or self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(200, json={"ok": True, "data": {"path": request.url.path}})
        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(scripted):
            return scripted(request)
        status, payload, *rest = scripted
        headers = rest[0] if rest else None
        if status == 304:
            return httpx.Response(304, headers=headers)
        return httpx.Response(status, json=payload, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class DictWorkflowSource:
    """Workflow source backed by a dict, for ad-hoc test workflows."""

    def __init__(self, definitions: Dict[str, dict]):
        self.definitions = definitions

    def load(self, key: str) -> WorkflowSpec | None:
        data = self.definitions.get(key)
        return None if data is None else parse_workflow(data, key)

    def keys(self) -> List[str]:
        return sorted(self.definitions)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tool_server() -> ToolServer:
    return ToolServer()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def make_loader() -> Callable[[Dict[str, dict]], WorkflowLoader]:
    def _make(definitions: Dict[str, dict], fallback: bool = True) -> WorkflowLoader:
        return WorkflowLoader(DictWorkflowSource(definitions), fallback=fallback)

    return _make


@pytest.fixture
def make_services(store, tool_server, clock) -> Callable[..., Services]:
    def _make(definitions: Optional[Dict[str, dict]] = None, **config: Any) -> Services:
        services = build_services(
            WiselyConfig(**config),
            store=store,
            client=tool_server.client(),
            now=clock,
        )
        if definitions is not None:
            loader = WorkflowLoader(DictWorkflowSource(definitions))
            services.loader = loader
            services.dispatcher.loader = loader
            services.cron.loader = loader
            services.status.loader = loader
        return services

    return _make
