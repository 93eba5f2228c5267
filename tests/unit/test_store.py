import asyncio
from datetime import timedelta

import pytest

import wisely.persistence as persistence
from wisely.config import WiselyConfig
from wisely.dispatch import WorkflowDispatcher
from wisely.errors import StoreError
from wisely.jobs import JobQueue
from wisely.persistence import AuditEvent, InMemoryStore, PostgresStore, SQLiteStore, get_store
from wisely.session import Artifact
from wisely.workflows import WorkflowLoader


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(tmp_path / "wisely.db")


@pytest.mark.asyncio
async def test_run_lifecycle_round_trips(backend, clock):
    dispatcher = WorkflowDispatcher(backend, WorkflowLoader(), audit=backend, now=clock)
    queue = JobQueue(backend, now=clock)
    result = await dispatcher.dispatch("u1", "weekly_seed_v1", intent_id="i1", payload={"w": 1})

    run = await backend.get_run(result.run_id)
    assert run.workflow_key == "weekly_seed_v1"
    assert run.intent_id == "i1"
    assert run.payload == {"w": 1}
    assert run.spec.step("brand_ingest").depends_on == ["ta_generate_week", "socratic_seed"]
    assert run.created_at == clock()

    [claimed] = await queue.claim("w1")
    assert claimed.job.status == "running"
    assert claimed.job.lease_until == clock() + timedelta(seconds=30)
    assert await queue.claim("w2") == []

    created = await queue.complete(claimed, {"week": 1})
    assert sorted(j.step_id for j in created) == ["socratic_seed", "ta_generate_week"]

    [job] = await backend.list_jobs(run_id=result.run_id, status="done")
    assert job.output == {"week": 1}
    assert job.attempts == 1
    [attempt] = await backend.list_attempts(job.job_id)
    assert attempt.success is True
    assert attempt.status_code == 200
    assert attempt.finished_at == clock()

    assert [r.run_id for r in await backend.list_runs(user_id="u1", status="running")] == [
        result.run_id
    ]
    assert await backend.list_runs(user_id="u2") == []
    assert len(await backend.list_jobs(user_id="u1", status="queued")) == 2
    await backend.close()


@pytest.mark.asyncio
async def test_concurrent_claims_are_exclusive(backend, clock):
    dispatcher = WorkflowDispatcher(backend, WorkflowLoader(), now=clock)
    queue = JobQueue(backend, now=clock)
    for _ in range(3):
        await dispatcher.dispatch("u1", "weekly_seed_v1")

    batches = await asyncio.gather(*(queue.claim(f"w{i}", limit=2) for i in range(4)))

    job_ids = [c.job.job_id for batch in batches for c in batch]
    assert len(job_ids) == 3
    assert len(set(job_ids)) == 3
    await backend.close()


@pytest.mark.asyncio
async def test_stale_jobs_and_missing_run(backend, clock):
    dispatcher = WorkflowDispatcher(backend, WorkflowLoader(), now=clock)
    queue = JobQueue(backend, now=clock)
    await dispatcher.dispatch("u1", "weekly_seed_v1")
    await queue.claim("w1", lease_seconds=10)

    assert await backend.stale_jobs(clock()) == []
    assert len(await backend.stale_jobs(clock() + timedelta(seconds=11))) == 1

    with pytest.raises(StoreError):
        await backend.mutate_run("missing", lambda state: None)
    await backend.close()


@pytest.mark.asyncio
async def test_sessions_are_keyed_by_user_week_day(backend, clock):
    def add_lecture(session):
        session.phase = "lecture"
        session.merge_artifacts(
            {"lecture": Artifact(value={"content": "x"}, tool="instructor", etag='"e"')}
        )
        return session.session_id

    session_id = await backend.update_session("u1", 1, 2, add_lecture)
    assert await backend.update_session("u1", 1, 2, lambda s: s.session_id) == session_id
    await backend.update_session("u1", 1, 3, lambda s: None)

    session = await backend.get_session("u1", 1, 2)
    assert session.phase == "lecture"
    assert session.artifacts["lecture"].etag == '"e"'
    assert session.artifact_value("lecture") == {"content": "x"}
    assert await backend.get_session("u1", 2, 2) is None
    assert sorted((s.week, s.day) for s in await backend.list_sessions("u1")) == [(1, 2), (1, 3)]

    def reject(session):
        session.phase = "completed"
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await backend.update_session("u1", 1, 2, reject)
    assert (await backend.get_session("u1", 1, 2)).phase == "lecture"
    await backend.close()


@pytest.mark.asyncio
async def test_audit_events_newest_first(backend, clock):
    await backend.record_event(AuditEvent(user_id="u1", type="first", created_at=clock()))
    clock.advance(1)
    await backend.record_event(
        AuditEvent(user_id="u1", type="second", payload={"k": 1}, created_at=clock())
    )
    await backend.record_event(AuditEvent(user_id="u2", type="other", created_at=clock()))

    events = await backend.list_events(user_id="u1")
    assert [e.type for e in events] == ["second", "first"]
    assert events[0].payload == {"k": 1}
    assert len(await backend.list_events(limit=1)) == 1
    await backend.close()


def test_get_store_selects_backend_from_url(tmp_path, monkeypatch):
    monkeypatch.delenv("WISELY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_store_instance", None)

    assert isinstance(get_store(config=WiselyConfig()), InMemoryStore)
    assert isinstance(get_store(f"sqlite://{tmp_path / 'a.db'}"), SQLiteStore)
    assert isinstance(get_store("postgresql://localhost/wisely"), PostgresStore)
    with pytest.raises(ValueError):
        get_store("mysql://localhost/wisely")

    monkeypatch.setenv("WISELY_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    store = get_store(config=WiselyConfig())
    assert isinstance(store, SQLiteStore)
    assert store.db_path == str(tmp_path / "env.db")


@pytest.mark.asyncio
async def test_session_stamps_use_given_time(backend, clock):
    await backend.update_session("u1", 1, 1, lambda s: None, now=clock())
    clock.advance(60)
    await backend.update_session("u1", 1, 1, lambda s: None, now=clock())
    await backend.update_session("u1", 1, 2, lambda s: None, now=clock() - timedelta(days=1))

    session = await backend.get_session("u1", 1, 1)
    assert session.updated_at == clock()
    assert session.created_at == clock() - timedelta(seconds=60)
    assert [s.day for s in await backend.list_sessions("u1")] == [1, 2]
    await backend.close()


@pytest.mark.asyncio
async def test_list_user_ids_covers_runs_and_sessions(backend, clock):
    assert await backend.list_user_ids() == []
    dispatcher = WorkflowDispatcher(backend, WorkflowLoader(), now=clock)
    await dispatcher.dispatch("u2", "weekly_seed_v1")
    await dispatcher.dispatch("u2", "weekly_seed_v1")
    await backend.update_session("u1", 1, 1, lambda s: None)

    assert await backend.list_user_ids() == ["u1", "u2"]
    await backend.close()
