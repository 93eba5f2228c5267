"""REST API for wisely.

Endpoints:
  POST /dispatch        - Start a workflow run for a user
  POST /session/event   - Apply a learning session event
  GET  /status          - Read-only summary for a user
  GET  /runs/{run_id}   - Run with its jobs and attempts
  GET  /health          - Health check (store connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..dispatch import WorkflowDispatcher
from ..errors import WiselyError
from ..persistence.repository import Store
from ..session.machine import SessionStateMachine
from ..status import StatusService

logger = logging.getLogger(__name__)


def _error(e: WiselyError, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": e.message, **extra}, status_code=e.status_code)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(value)
    return int(value)


def create_app(
    store: Store,
    dispatcher: WorkflowDispatcher,
    machine: SessionStateMachine,
    status: StatusService,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def dispatch(request: Request) -> JSONResponse:
        """POST /dispatch - Start a workflow run."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)

        user_id = body.get("userId")
        workflow_key = body.get("workflowKey")
        if not user_id or not workflow_key:
            return JSONResponse(
                {"success": False, "error": "Missing required fields: userId, workflowKey"},
                status_code=400,
            )
        payload = body.get("payload")
        if payload is not None and not isinstance(payload, dict):
            return JSONResponse(
                {"success": False, "error": "payload must be an object"}, status_code=400
            )

        try:
            result = await dispatcher.dispatch(
                user_id,
                workflow_key,
                intent_id=body.get("intentId"),
                payload=payload,
                trigger_event_id=body.get("triggerEventId"),
            )
        except WiselyError as e:
            logger.warning(f"Dispatch of {workflow_key} for {user_id} failed: {e}")
            return _error(e)

        return JSONResponse(
            {
                "success": True,
                "runId": result.run_id,
                "status": result.status,
                "stepsEnqueued": result.steps_enqueued,
                "workflowKey": result.workflow_key,
            }
        )

    async def session_event(request: Request) -> JSONResponse:
        """POST /session/event - Drive the session state machine."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"ok": False, "error": "Invalid JSON body"}, status_code=400)

        user_id = body.get("userId")
        event = body.get("event")
        if not user_id or not event:
            return JSONResponse(
                {"ok": False, "error": "Missing required fields: userId, event"},
                status_code=400,
            )
        try:
            week = _int(body.get("week"), 1)
            day = _int(body.get("day"), 1)
        except ValueError:
            return JSONResponse(
                {"ok": False, "error": "week and day must be integers"}, status_code=400
            )
        payload = body.get("payload")
        if payload is not None and not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "payload must be an object"}, status_code=400)

        try:
            result = await machine.handle_event(
                user_id,
                event,
                week=week,
                day=day,
                payload=payload,
                etag_if_none_match=body.get("etagIfNoneMatch"),
            )
        except WiselyError as e:
            logger.warning(f"Session event {event} for {user_id} rejected: {e}")
            return _error(e, ok=False)

        response: dict[str, Any] = {
            "ok": result.ok,
            "sessionId": result.session_id,
            "phase": result.phase,
            "next": result.next,
        }
        if result.data is not None:
            response["data"] = result.data
        if result.etag:
            response["etag"] = result.etag
        if result.ok:
            return JSONResponse(response)

        response["error"] = result.error
        response["degraded"] = result.degraded
        status_code = 429 if result.rate_limited else 502
        return JSONResponse(response, status_code=status_code)

    async def get_status(request: Request) -> JSONResponse:
        """GET /status - Read-only summary."""
        user_id = request.query_params.get("userId")
        if not user_id:
            return JSONResponse(
                {"success": False, "error": "Missing required query parameter: userId"},
                status_code=400,
            )
        try:
            return JSONResponse(await status.summary(user_id))
        except WiselyError as e:
            return _error(e)

    async def get_run(request: Request) -> JSONResponse:
        """GET /runs/{run_id} - Run detail."""
        run_id = request.path_params["run_id"]
        try:
            run = await store.get_run(run_id)
            if run is None:
                return JSONResponse(
                    {"success": False, "error": f"Run not found: {run_id}"}, status_code=404
                )
            jobs = await store.list_jobs(run_id=run_id)
            detail = run.model_dump(mode="json")
            detail["jobs"] = []
            for job in jobs:
                entry = job.model_dump(mode="json")
                entry["attempts_log"] = [
                    a.model_dump(mode="json") for a in await store.list_attempts(job.job_id)
                ]
                detail["jobs"].append(entry)
        except WiselyError as e:
            return _error(e)
        return JSONResponse(detail)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Store connectivity."""
        try:
            await store.list_runs(limit=1)
        except WiselyError as e:
            return JSONResponse({"status": "unhealthy", "error": e.message}, status_code=503)
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/dispatch", dispatch, methods=["POST"]),
        Route("/session/event", session_event, methods=["POST"]),
        Route("/status", get_status, methods=["GET"]),
        Route("/runs/{run_id}", get_run, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan)
