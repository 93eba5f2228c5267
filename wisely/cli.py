"""Command line interface for running wisely services."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
import uvicorn
from pydantic import ValidationError as PydanticValidationError

from wisely.api.rest import create_app
from wisely.config import WiselyConfig, load_config
from wisely.errors import WiselyError
from wisely.ratelimit import RateLimitConfig
from wisely.services import Services, build_services
from wisely.tools import ToolCallArgs, parse_tool_call
from wisely.utils.time import ensure_utc

T = TypeVar("T")

logger = logging.getLogger(__name__)

app = typer.Typer(help="CLI for wisely orchestration")

# Command groups
worker_app = typer.Typer(help="Commands for running job workers")
workflow_app = typer.Typer(help="Commands for managing workflows")
cron_app = typer.Typer(help="Commands for scheduled dispatch")
ratelimit_app = typer.Typer(help="Commands for inspecting rate limits")
tool_app = typer.Typer(help="Commands for calling reasoning tools directly")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(cron_app, name="cron")
app.add_typer(ratelimit_app, name="ratelimit")
app.add_typer(tool_app, name="tool")

_state: dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """wisely CLI entry point."""
    _state["config_path"] = str(config) if config else None
    logging.basicConfig(
        level=_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> WiselyConfig:
    return load_config(_state["config_path"])


def _run(action: Callable[[Services], Awaitable[T]]) -> T:
    """Build services, run ``action`` on an event loop and close everything."""

    async def runner() -> T:
        services = build_services(_config())
        try:
            return await action(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except WiselyError as e:
        typer.secho(f"Error: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _report_worker_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Worker pool stopped: {error!r}")


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _parse_payload(payload: Optional[str]) -> Optional[dict]:
    if payload is None:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON payload: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


@app.command("serve")
def serve(
    host: Optional[str] = None,
    port: Optional[int] = None,
    with_worker: bool = typer.Option(
        False, help="Run the job worker pool inside the server process"
    ),
) -> None:
    """
    Serve the HTTP API.

    Example:
        wisely serve --port 8080 --with-worker
    """
    config = _config()
    services = build_services(config)

    @contextlib.asynccontextmanager
    async def lifespan(_app):
        task = None
        if with_worker:
            task = asyncio.create_task(services.worker_pool().start())
            task.add_done_callback(_report_worker_exit)
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            await services.aclose()

    api = create_app(
        services.store,
        services.dispatcher,
        services.machine,
        services.status,
        lifespan=lifespan,
    )
    uvicorn.run(
        api,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.log_level.lower(),
    )


@worker_app.command("run")
def worker_run(
    concurrency: Optional[int] = None,
    lifespan: Optional[float] = None,
    once: bool = typer.Option(False, help="Process a single batch and exit"),
) -> None:
    """
    Run job workers against the configured store.

    Args:
        concurrency: Number of workers (default: worker.concurrency from config)
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        wisely worker run --concurrency 4
        wisely worker run --once
    """

    async def action(services: Services) -> int:
        pool = services.worker_pool(concurrency)
        if once:
            await services.queue.reclaim_stale()
            return await pool.run_once()
        await pool.start(lifespan=lifespan)
        return 0

    handled = _run(action)
    if once:
        typer.echo(f"Processed {handled} job(s)")


@workflow_app.command("list")
def workflow_list() -> None:
    """List workflow definitions with their triggers."""

    async def action(services: Services) -> None:
        specs = services.loader.all()
        if not specs:
            typer.echo("No workflows found")
            return
        for spec in specs:
            trigger = spec.trigger
            detail = ", ".join(
                part
                for part in (
                    f"cron={trigger.cron}" if trigger.cron else "",
                    f"events={','.join(trigger.event_types)}" if trigger.event_types else "",
                )
                if part
            )
            typer.echo(f"{spec.key}\t{trigger.type}\t{len(spec.steps)} steps\t{detail}")

    _run(action)


@workflow_app.command("show")
def workflow_show(workflow_key: str) -> None:
    """Show the steps of a workflow definition."""

    async def action(services: Services) -> None:
        spec = services.loader.load(workflow_key)
        typer.echo(f"Workflow {spec.key} ({spec.trigger.type})")
        for step in spec.steps:
            deps = f" <- {', '.join(step.depends_on)}" if step.depends_on else ""
            typer.echo(f"- {step.id}: {step.method} {step.call}{deps}")

    _run(action)


@workflow_app.command("dispatch")
def workflow_dispatch(
    user_id: str,
    workflow_key: str,
    intent_id: Optional[str] = None,
    payload: Optional[str] = typer.Option(None, help="JSON object passed to root steps"),
) -> None:
    """
    Start a workflow run for a user.

    Example:
        wisely workflow dispatch user-1 weekly_seed_v1
    """
    body = _parse_payload(payload)

    async def action(services: Services):
        return await services.dispatcher.dispatch(
            user_id, workflow_key, intent_id=intent_id, payload=body
        )

    result = _run(action)
    typer.echo("Workflow dispatched successfully!")
    typer.echo(f"Run ID: {result.run_id}")
    typer.echo(f"Steps enqueued: {result.steps_enqueued}")


@workflow_app.command("runs")
def workflow_runs(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
) -> None:
    """List workflow runs, newest first."""

    async def action(services: Services):
        return await services.store.list_runs(user_id=user_id, status=status, limit=limit)

    runs = _run(action)
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.run_id}\t{run.workflow_key}\t{run.user_id}\t{run.status}\t"
            f"{run.created_at.isoformat()}"
        )


@workflow_app.command("jobs")
def workflow_jobs(run_id: str) -> None:
    """Show the jobs and attempts of a run."""

    async def action(services: Services):
        run = await services.store.get_run(run_id)
        if run is None:
            return None
        jobs = await services.store.list_jobs(run_id=run_id)
        return run, [(job, await services.store.list_attempts(job.job_id)) for job in jobs]

    found = _run(action)
    if found is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    run, jobs = found
    typer.echo(f"Run {run.run_id} ({run.workflow_key}): {run.status}")
    for job, attempts in jobs:
        typer.echo(
            f"- {job.step_id}: {job.status} "
            f"(attempts {job.attempts}/{job.max_attempts}, next {job.next_run_at.isoformat()})"
        )
        for attempt in attempts:
            outcome = "open" if attempt.is_open else ("ok" if attempt.success else "failed")
            typer.echo(
                f"    #{attempt.attempt_number} {outcome} {attempt.status_code or ''} "
                f"{attempt.error_text or ''}".rstrip()
            )


@cron_app.command("tick")
def cron_tick(
    user_ids: Optional[List[str]] = typer.Argument(
        None, help="Users to tick; defaults to every user with runs or sessions"
    ),
    at: Optional[datetime] = typer.Option(None, help="Evaluate schedules at this time (UTC)"),
) -> None:
    """
    Dispatch every workflow whose cron trigger matches the current minute.

    Example:
        wisely cron tick user-1 user-2
        wisely cron tick --at 2024-01-07T18:00:00
    """

    async def action(services: Services):
        return await services.cron.tick(user_ids or None, at=ensure_utc(at) if at else None)

    result = _run(action)
    if not result.workflows:
        typer.echo("No workflows due")
        return
    for user_id, dispatched in result.dispatched.items():
        for item in dispatched:
            typer.echo(f"{user_id}\t{item.workflow_key}\t{item.run_id}")
    for user_id, error in result.errors.items():
        typer.secho(f"{user_id}\t{error}", fg=typer.colors.RED)


@ratelimit_app.command("status")
def ratelimit_status(key: str) -> None:
    """Show the current token count of a bucket, e.g. user:u1:agent:clo."""

    async def action(services: Services):
        return await services.limiter.get_status(key)

    status = _run(action)
    if status is None:
        typer.echo("Bucket not found")
        raise typer.Exit(code=1)
    _echo_json(status.model_dump(mode="json"))


@ratelimit_app.command("reset")
def ratelimit_reset(
    key: str,
    per_minute: Optional[int] = typer.Option(None, help="Resize the bucket to N calls/minute"),
) -> None:
    """Refill a bucket to capacity."""
    config = RateLimitConfig.per_minute(per_minute) if per_minute else None

    async def action(services: Services) -> None:
        await services.limiter.reset(key, config)

    _run(action)
    typer.echo(f"Reset {key}")


@tool_app.command("call")
def tool_call(
    user_id: str,
    action: str,
    week: Optional[int] = None,
    day: Optional[int] = None,
    payload: Optional[str] = typer.Option(
        None, help="JSON object with the call's fields; other keys go into its payload"
    ),
) -> None:
    """
    Invoke one tool action for a user, outside any workflow or session.

    Example:
        wisely tool call user-1 GET_WEEKLY_PLAN --week 2
        wisely tool call user-1 RUN --payload '{"fs": [{"path": "main.py", "content": "print(1)"}]}'
    """
    body = _parse_payload(payload) or {}
    try:
        call = parse_tool_call({**body, "action": action})
    except PydanticValidationError as e:
        typer.secho(f"Invalid tool call {action}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    args = ToolCallArgs(
        user_id=user_id,
        week=week,
        day=day,
        payload={k: v for k, v in body.items() if k not in type(call).model_fields},
    )

    async def run_call(services: Services):
        return await services.registry.call(call, args)

    result = _run(run_call)
    if not result.ok:
        typer.secho(
            f"Error: {result.error} (status {result.status_code}, degraded={result.degraded})",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    _echo_json({"status": result.status_code, "etag": result.etag, "data": result.data})


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
