"""HTTP API tests driven through httpx's ASGITransport."""

import pytest
from httpx import ASGITransport, AsyncClient

from wisely.api import create_app
from wisely.errors import StoreError


@pytest.fixture
def services(make_services, tool_server):
    tool_server.script(
        "DELIVER_LECTURE", (200, {"ok": True, "data": {"content": "hello"}}, {"ETag": '"l1"'})
    )
    return make_services()


@pytest.fixture
def client(services):
    app = create_app(services.store, services.dispatcher, services.machine, services.status)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_dispatch_and_run_detail(client, services):
    response = await client.post(
        "/dispatch", json={"userId": "u1", "workflowKey": "weekly_seed_v1", "intentId": "i1"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "dispatched"
    assert body["stepsEnqueued"] == 1
    run_id = body["runId"]

    await services.worker_pool(1).run_once()

    response = await client.get(f"/runs/{run_id}")
    assert response.status_code == 200
    detail = response.json()
    assert detail["intent_id"] == "i1"
    jobs = {job["step_id"]: job for job in detail["jobs"]}
    assert jobs["clo_begin_week"]["status"] == "done"
    assert jobs["clo_begin_week"]["attempts_log"][0]["success"] is True
    assert jobs["ta_generate_week"]["status"] == "queued"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,status",
    [
        ({"userId": "u1"}, 400),
        ({"userId": "u1", "workflowKey": "nope"}, 404),
        ({"userId": "u1", "workflowKey": "weekly_seed_v1", "payload": [1]}, 400),
    ],
)
async def test_dispatch_errors(client, payload, status):
    response = await client.post("/dispatch", json=payload)
    assert response.status_code == status
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_dispatch_rejects_invalid_json(client):
    response = await client.post("/dispatch", content=b"{not json")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_session_event_flow(client):
    response = await client.post(
        "/session/event", json={"userId": "u1", "event": "start_day", "week": 1, "day": 2}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["phase"] == "lecture"
    assert body["next"] == "lecture_done"
    assert body["data"]["lecture"] == {"content": "hello"}
    assert body["etag"] == '"l1"'

    response = await client.post(
        "/session/event", json={"userId": "u1", "event": "start_day", "week": 1, "day": 2}
    )
    assert response.status_code == 409
    assert response.json()["ok"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"userId": "u1"},
        {"userId": "u1", "event": "start_day", "week": "one"},
        {"userId": "u1", "event": "fly"},
        {"userId": "u1", "event": "start_day", "payload": "x"},
    ],
)
async def test_session_event_validation(client, payload):
    response = await client.post("/session/event", json=payload)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_session_event_upstream_failure_is_502(make_services, tool_server):
    tool_server.script("GET_DAILY_LESSON", (500, {"error": "clo crashed"}))
    services = make_services()
    app = create_app(services.store, services.dispatcher, services.machine, services.status)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/session/event", json={"userId": "u1", "event": "start_day"})

    assert response.status_code == 502
    body = response.json()
    assert body["ok"] is False
    assert body["degraded"] is True
    assert body["phase"] == "planning"


@pytest.mark.asyncio
async def test_status_summary(client, clock):
    await client.post("/dispatch", json={"userId": "u1", "workflowKey": "weekly_seed_v1"})
    await client.post("/session/event", json={"userId": "u1", "event": "start_day"})

    response = await client.get("/status", params={"userId": "u1"})

    assert response.status_code == 200
    summary = response.json()
    assert summary["active_run"]["workflow_key"] == "weekly_seed_v1"
    assert summary["latest_session"]["phase"] == "lecture"
    assert summary["signal_freshness"]["instructor"]["fresh"] is True
    assert summary["signal_freshness"]["alex"]["available"] is False
    assert summary["next_session"] == {"week": 1, "day": 1}
    assert summary["stats"]["runs"] == {"running": 1}
    assert summary["next_scheduled_run"]["workflow_key"] == "daily_instructor_v1"

    assert (await client.get("/status")).status_code == 400


@pytest.mark.asyncio
async def test_missing_run_and_health(client, services, monkeypatch):
    assert (await client.get("/runs/missing")).status_code == 404
    assert (await client.get("/health")).json() == {"status": "healthy"}

    async def broken(*args, **kwargs):
        raise StoreError("database unavailable")

    monkeypatch.setattr(services.store, "list_runs", broken)
    response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
