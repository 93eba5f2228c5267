import asyncio
from datetime import timedelta

import pytest

from wisely.errors import LogicError, PreconditionError, SessionBusyError, ValidationError
from wisely.session import NEXT_EVENT, PHASE_ORDER, Artifact, next_phase

LECTURE = {"content": "Graphs are sets of vertices and edges."}


def _script_happy_path(tool_server):
    tool_server.script("GET_DAILY_LESSON", (200, {"ok": True, "data": {"prompts": ["p1"]}}))
    tool_server.script("DELIVER_LECTURE", (200, {"ok": True, "data": LECTURE}, {"ETag": '"lec-1"'}))
    tool_server.script("CHECK_COMPREHENSION", (200, {"ok": True, "data": {"gaps": ["bfs"]}}))
    tool_server.script("MODIFY_PRACTICE_PROMPTS", (200, {"ok": True, "data": {"prompt": "mp"}}))
    tool_server.script("GENERATE_EXERCISES", (200, {"ok": True, "data": {"exercises": [1, 2]}}))
    tool_server.script("GENERATE_QUESTIONS", (200, {"ok": True, "data": {"questions": ["why?"]}}))
    tool_server.script("START", (200, {"ok": True, "data": {"workspaceId": "ws1"}}))
    tool_server.script("FINAL_REVIEW", (200, {"ok": True, "data": {"score": 9}}))


async def _advance_to(machine, event, **payloads):
    for step in ("start_day", "lecture_done", "check_done", "practice_ready", "practice_done"):
        if step == event:
            return
        await machine.handle_event("u1", step, payload=payloads.get(step))


def test_phase_helpers():
    assert next_phase("planning") == "lecture"
    assert next_phase("completed") == "completed"
    assert NEXT_EVENT["practice_prep"] == "practice_ready"
    assert NEXT_EVENT["completed"] is None
    assert PHASE_ORDER[-1] == "completed"


@pytest.mark.asyncio
async def test_full_day_walks_every_phase(make_services, tool_server, store):
    _script_happy_path(tool_server)
    machine = make_services().machine

    phases = []
    for event, payload in [
        ("start_day", {"topic": "graphs"}),
        ("lecture_done", None),
        ("check_done", None),
        ("practice_ready", {"practiceType": "exercises"}),
        ("practice_done", {"results": {"correct": 2}}),
        ("reflect_done", {"reflection": "BFS clicked"}),
    ]:
        result = await machine.handle_event("u1", event, week=1, day=1, payload=payload)
        assert result.ok
        phases.append((result.phase, result.next))

    assert phases == [
        ("lecture", "lecture_done"),
        ("check", "check_done"),
        ("practice_prep", "practice_ready"),
        ("practice", "practice_done"),
        ("reflect", "reflect_done"),
        ("completed", None),
    ]
    session = await store.get_session("u1", 1, 1)
    assert session.phase == "completed"
    assert session.busy_until is None
    assert session.artifact_value("lecture") == LECTURE
    assert session.artifact_value("practice_type") == "exercises"
    assert session.artifact_value("practice") == {"exercises": [1, 2]}
    assert session.artifact_value("practice_results") == {"correct": 2}
    assert session.artifact_value("reflection") == "BFS clicked"
    assert session.artifacts["lecture"].tool == "instructor"
    events = [e.type for e in await store.list_events(user_id="u1")]
    assert events[0] == "session_reflect_done"
    assert len(events) == 6


@pytest.mark.asyncio
async def test_start_day_sends_plan_to_lecture(make_services, tool_server):
    _script_happy_path(tool_server)
    machine = make_services().machine

    result = await machine.handle_event("u1", "start_day", week=2, day=3)

    assert result.data == {"clo_day": {"prompts": ["p1"]}, "lecture": LECTURE}
    assert result.etag == '"lec-1"'
    clo_body, lecture_body = tool_server.bodies()
    assert clo_body["agent"] == "clo"
    assert clo_body["weekNumber"] == 2
    assert lecture_body["action"] == "DELIVER_LECTURE"
    assert lecture_body["payload"]["basePrompt"] == {"prompts": ["p1"]}


@pytest.mark.asyncio
async def test_events_out_of_order_are_rejected(make_services, tool_server):
    _script_happy_path(tool_server)
    machine = make_services().machine

    with pytest.raises(PreconditionError, match="not reached yet"):
        await machine.handle_event("u1", "check_done")

    await machine.handle_event("u1", "start_day")
    with pytest.raises(PreconditionError, match="already passed"):
        await machine.handle_event("u1", "start_day")
    assert (await machine.get_session("u1")).phase == "lecture"


@pytest.mark.asyncio
async def test_invalid_events_and_payloads(make_services):
    machine = make_services().machine
    with pytest.raises(ValidationError):
        await machine.handle_event("u1", "dance")
    with pytest.raises(ValidationError):
        await machine.handle_event("", "start_day")
    with pytest.raises(ValidationError, match="practiceType"):
        await machine.handle_event("u1", "practice_ready", payload={"practiceType": "karaoke"})
    with pytest.raises(ValidationError):
        await machine.handle_event("u1", "practice_done", payload={"fs": [{"path": "a.py"}]})


@pytest.mark.asyncio
async def test_busy_session_rejects_concurrent_event(make_services, tool_server, clock):
    _script_happy_path(tool_server)
    machine = make_services().machine
    await machine.handle_event("u1", "start_day")

    def claim(session):
        session.busy_until = clock() + timedelta(seconds=60)

    await machine.store.update_session("u1", 1, 1, claim)
    with pytest.raises(SessionBusyError):
        await machine.handle_event("u1", "lecture_done")

    clock.advance(61)
    assert (await machine.handle_event("u1", "lecture_done")).ok


@pytest.mark.asyncio
async def test_simultaneous_events_run_one_at_a_time(make_services, tool_server):
    _script_happy_path(tool_server)
    machine = make_services().machine

    results = await asyncio.gather(
        machine.handle_event("u1", "start_day"),
        machine.handle_event("u1", "start_day"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception) and r.ok) == 1
    assert any(isinstance(r, (SessionBusyError, PreconditionError)) for r in results)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "practice_type,action,artifact",
    [
        ("coding", "START", {"workspaceId": "ws1"}),
        ("socratic", "GENERATE_QUESTIONS", {"questions": ["why?"]}),
        ("exercises", "GENERATE_EXERCISES", {"exercises": [1, 2]}),
    ],
)
async def test_practice_ready_branches_on_type(
    make_services, tool_server, practice_type, action, artifact
):
    _script_happy_path(tool_server)
    machine = make_services().machine
    await _advance_to(machine, "practice_ready")

    result = await machine.handle_event(
        "u1", "practice_ready", payload={"practiceType": practice_type}
    )

    assert result.ok
    assert result.data["practice"] == artifact
    assert tool_server.bodies()[-1]["action"] == action


@pytest.mark.asyncio
async def test_coding_practice_done_requests_final_review(make_services, tool_server, store):
    _script_happy_path(tool_server)
    machine = make_services().machine
    await _advance_to(machine, "practice_done", practice_ready={"practiceType": "coding"})

    files = [{"path": "main.py", "content": "print(1)"}]
    result = await machine.handle_event("u1", "practice_done", payload={"fs": files})

    assert result.data["review"] == {"score": 9}
    assert tool_server.paths()[-1] == "/functions/v1/coding-workspace/alex/final"
    assert tool_server.bodies()[-1]["payload"]["fs"] == files
    assert (await store.get_session("u1", 1, 1)).phase == "reflect"


@pytest.mark.asyncio
async def test_tool_failure_keeps_phase_and_earlier_artifacts(make_services, tool_server, store):
    tool_server.script("GET_DAILY_LESSON", (200, {"ok": True, "data": {"prompts": ["p1"]}}))
    tool_server.script("DELIVER_LECTURE", (503, {"error": "instructor down"}))
    machine = make_services().machine

    result = await machine.handle_event("u1", "start_day")

    assert not result.ok
    assert result.degraded
    assert result.error == "instructor down"
    assert result.phase == "planning"
    session = await store.get_session("u1", 1, 1)
    assert session.phase == "planning"
    assert session.busy_until is None
    assert session.artifact_value("clo_day") == {"prompts": ["p1"]}


@pytest.mark.asyncio
async def test_lecture_without_content_is_a_logic_error(make_services, tool_server, store):
    tool_server.script("DELIVER_LECTURE", (200, {"ok": True, "data": {"title": "no body"}}))
    machine = make_services().machine

    with pytest.raises(LogicError):
        await machine.handle_event("u1", "start_day")

    session = await store.get_session("u1", 1, 1)
    assert session.phase == "planning"
    assert session.busy_until is None


@pytest.mark.asyncio
async def test_rate_limited_tool_returns_flag(make_services, tool_server):
    _script_happy_path(tool_server)
    machine = make_services(tools={"rate_limits": {"clo": 1}}).machine
    await machine.handle_event("u1", "start_day", day=1)

    result = await machine.handle_event("u1", "start_day", day=2)

    assert not result.ok
    assert result.rate_limited
    assert result.phase == "planning"


@pytest.mark.asyncio
async def test_not_modified_reuses_cached_artifact(make_services, tool_server, store):
    tool_server.script("DELIVER_LECTURE", (200, {"ok": True, "data": LECTURE}))
    tool_server.script("CHECK_COMPREHENSION", (304, None, {"ETag": '"c0"'}))
    machine = make_services().machine
    await machine.handle_event("u1", "start_day")

    def seed(session):
        session.artifacts["comprehension"] = Artifact(
            value={"gaps": ["cached"]}, tool="instructor", etag='"c0"'
        )

    await store.update_session("u1", 1, 1, seed)

    result = await machine.handle_event("u1", "lecture_done", etag_if_none_match='"c0"')

    assert result.ok
    assert result.data is None
    assert result.not_modified
    assert result.phase == "check"
    assert result.etag == '"c0"'
    assert tool_server.requests[-1].headers["If-None-Match"] == '"c0"'
    session = await store.get_session("u1", 1, 1)
    assert session.artifact_value("comprehension") == {"gaps": ["cached"]}


@pytest.mark.asyncio
async def test_stored_etag_is_sent_for_secondary_artifacts(make_services, tool_server, store):
    tool_server.script("GET_DAILY_LESSON", (200, {"ok": True, "data": {"d": 1}}, {"ETag": '"d1"'}))
    tool_server.script("DELIVER_LECTURE", (200, {"ok": True, "data": LECTURE}))
    machine = make_services().machine

    await machine.handle_event("u1", "start_day", day=1)
    assert "If-None-Match" not in tool_server.requests[0].headers
    assert (await store.get_session("u1", 1, 1)).artifacts["clo_day"].etag == '"d1"'


@pytest.mark.asyncio
async def test_session_timestamps_follow_injected_clock(
    make_services, tool_server, store, clock
):
    _script_happy_path(tool_server)
    machine = make_services().machine
    started = clock()

    await machine.handle_event("u1", "start_day", week=1, day=1)
    clock.advance(3600)
    await machine.handle_event("u1", "start_day", week=1, day=2)

    first, second = await store.get_session("u1", 1, 1), await store.get_session("u1", 1, 2)
    assert first.created_at == first.updated_at == started
    assert second.updated_at == started + timedelta(hours=1)
    assert [(s.week, s.day) for s in await store.list_sessions("u1")] == [(1, 2), (1, 1)]
