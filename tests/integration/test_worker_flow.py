"""End-to-end runs: dispatch, workers and a scripted tool gateway."""

import httpx
import pytest

from wisely.errors import StoreError

TA_PATH = "/functions/v1/agent-proxy/ta/generate-week"

SINGLE_STEP = {
    "single": {
        "key": "single",
        "steps": [{"id": "generate", "call": TA_PATH, "retry": {"max_attempts": 5}}],
    }
}


async def _drain(services, clock, rounds=10, step=60):
    pool = services.worker_pool(1)
    for _ in range(rounds):
        await services.queue.reclaim_stale()
        await pool.run_once()
        clock.advance(step)


@pytest.mark.asyncio
async def test_weekly_seed_fans_out_and_joins(make_services, tool_server, store):
    services = make_services()
    pool = services.worker_pool(1)
    run_id = (await services.dispatcher.dispatch("u1", "weekly_seed_v1")).run_id

    assert await pool.run_once() == 1
    assert tool_server.paths() == ["/functions/v1/agent-proxy/clo/begin-week"]
    queued = {j.step_id for j in await store.list_jobs(run_id=run_id, status="queued")}
    assert queued == {"ta_generate_week", "socratic_seed"}

    assert await pool.run_once() == 2
    queued = {j.step_id for j in await store.list_jobs(run_id=run_id, status="queued")}
    assert queued == {"brand_ingest"}

    assert await pool.run_once() == 1
    assert tool_server.paths()[-1] == "/functions/v1/agent-proxy/brand/update-briefing"
    run = await store.get_run(run_id)
    assert run.status == "completed"
    assert {j.status for j in await store.list_jobs(run_id=run_id)} == {"done"}


@pytest.mark.asyncio
async def test_transient_failures_retry_until_success(make_services, tool_server, store, clock):
    tool_server.script(
        TA_PATH,
        (503, {"error": "busy"}),
        (503, {"error": "busy"}),
        (503, {"error": "busy"}),
        (200, {"ok": True, "data": {"week": "ready"}}),
    )
    services = make_services(definitions=SINGLE_STEP)
    run_id = (await services.dispatcher.dispatch("u1", "single")).run_id

    await _drain(services, clock)

    [job] = await store.list_jobs(run_id=run_id)
    assert job.status == "done"
    assert job.attempts == 4
    assert job.output == {"week": "ready"}
    attempts = await store.list_attempts(job.job_id)
    assert [(a.success, a.status_code) for a in attempts] == [
        (False, 503),
        (False, 503),
        (False, 503),
        (True, 200),
    ]
    assert (await store.get_run(run_id)).status == "completed"


@pytest.mark.asyncio
async def test_client_error_is_dead_after_one_attempt(make_services, tool_server, store, clock):
    tool_server.script(TA_PATH, (400, {"error": "week out of range"}))
    services = make_services(definitions=SINGLE_STEP)
    run_id = (await services.dispatcher.dispatch("u1", "single")).run_id

    await _drain(services, clock)

    [job] = await store.list_jobs(run_id=run_id)
    assert job.status == "dead"
    assert job.attempts == 1
    assert job.last_error == "week out of range"
    assert len(tool_server.requests) == 1
    assert (await store.get_run(run_id)).status == "failed"


@pytest.mark.asyncio
async def test_rate_limited_job_is_deferred(make_services, tool_server, store, clock):
    services = make_services(tools={"rate_limits": {"clo": 1}})
    await services.dispatcher.dispatch("u1", "weekly_seed_v1")
    await services.dispatcher.dispatch("u1", "weekly_seed_v1")

    await services.worker_pool(1).run_once()

    clo_jobs = [j for j in await store.list_jobs(user_id="u1") if j.step_id == "clo_begin_week"]
    deferred = [j for j in clo_jobs if j.status == "queued"]
    assert len(deferred) == 1
    assert deferred[0].attempts == 0
    # Deferred until the bucket refills one token: 60s at 1 call/minute.
    assert (deferred[0].next_run_at - clock()).total_seconds() == pytest.approx(60)
    [attempt] = await store.list_attempts(deferred[0].job_id)
    assert attempt.status_code == 429
    assert len(tool_server.requests) == 1


@pytest.mark.asyncio
async def test_daily_instructor_passes_snapshot_to_plan(make_services, tool_server, store, clock):
    tool_server.script(
        "/functions/v1/agent-proxy/snapshot", (200, {"ok": True, "data": {"streak": 3}})
    )
    services = make_services()
    run_id = (await services.dispatcher.dispatch("u1", "daily_instructor_v1")).run_id

    await _drain(services, clock, rounds=3)

    snapshot, plan, notify = tool_server.requests
    assert snapshot.method == "GET"
    assert snapshot.content == b""
    assert snapshot.headers["X-Idempotency-Key"] == f"{run_id}-gather_signals"
    assert tool_server.bodies()[1] == {"streak": 3}
    assert plan.headers["X-Idempotency-Key"] == f"{run_id}-create_plan"
    assert plan.headers["X-Correlation-Id"] == run_id
    assert tool_server.bodies()[2] == {"channel": "inbox", "message": "Your plan is ready"}
    assert (await store.get_run(run_id)).status == "completed"


@pytest.mark.asyncio
async def test_unexpected_executor_error_is_retryable(make_services, tool_server, store, clock):
    def explode(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("serializer crashed")

    tool_server.script(TA_PATH, explode, (200, {"ok": True, "data": {}}))
    services = make_services(definitions=SINGLE_STEP)
    run_id = (await services.dispatcher.dispatch("u1", "single")).run_id

    await _drain(services, clock, rounds=2)

    [job] = await store.list_jobs(run_id=run_id)
    assert job.status == "done"
    attempts = await store.list_attempts(job.job_id)
    assert [a.status_code for a in attempts] == [599, 200]


@pytest.mark.asyncio
async def test_worker_pool_start_stops_after_lifespan(make_services, store):
    services = make_services(worker={"poll_interval": 0.01, "concurrency": 2})
    run_id = (await services.dispatcher.dispatch("u1", "weekly_seed_v1")).run_id

    await services.worker_pool().start(lifespan=0.2)

    assert (await store.get_run(run_id)).status == "completed"


def _fail_once(monkeypatch, store, name):
    original = getattr(store, name)
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(name)
        if len(calls) == 1:
            raise StoreError("connection reset")
        return await original(*args, **kwargs)

    monkeypatch.setattr(store, name, flaky)
    return calls


@pytest.mark.asyncio
async def test_worker_survives_transient_claim_error(make_services, store, monkeypatch):
    services = make_services(worker={"poll_interval": 0.01})
    run_id = (await services.dispatcher.dispatch("u1", "weekly_seed_v1")).run_id
    calls = _fail_once(monkeypatch, store, "claim_jobs")

    await services.worker_pool(1).start(lifespan=0.2)

    assert len(calls) > 1
    assert (await store.get_run(run_id)).status == "completed"


@pytest.mark.asyncio
async def test_failed_completion_write_is_reclaimed(
    make_services, store, clock, monkeypatch
):
    services = make_services(definitions=SINGLE_STEP)
    run_id = (await services.dispatcher.dispatch("u1", "single")).run_id
    _fail_once(monkeypatch, store, "mutate_run")
    pool = services.worker_pool(1)

    assert await pool.run_once() == 1
    [job] = await store.list_jobs(run_id=run_id)
    assert job.status == "running"

    clock.advance(31)
    [reclaimed] = await services.queue.reclaim_stale()
    assert reclaimed.status == "queued"
    clock.advance(5)
    assert await pool.run_once() == 1

    [job] = await store.list_jobs(run_id=run_id)
    assert job.status == "done"
    attempts = await store.list_attempts(job.job_id)
    assert [a.status_code for a in attempts] == [599, 200]
