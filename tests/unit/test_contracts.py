import pytest

from wisely.contracts import RetryPolicy, WorkflowSpec, WorkflowStep, tool_from_path
from wisely.errors import MalformedWorkflowError
from wisely.utils.retry import compute_backoff


def _spec(*steps: dict) -> WorkflowSpec:
    return WorkflowSpec.model_validate({"key": "wf", "steps": list(steps)})


def test_exponential_backoff_doubles_and_respects_cap():
    delays = [compute_backoff(n, base=1.5, kind="exp", cap=20) for n in range(1, 8)]
    assert delays[:4] == [1.5, 3.0, 6.0, 12.0]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 20


def test_linear_and_fixed_backoff():
    assert compute_backoff(3, base=2, kind="linear") == 6
    assert compute_backoff(3, base=2, kind="fixed") == 2
    with pytest.raises(ValueError):
        compute_backoff(1, kind="random")


def test_retry_policy_accepts_milliseconds():
    policy = RetryPolicy.model_validate({"max_attempts": 3, "backoff": "exp", "base_ms": 1500})
    assert policy.base_delay == 1.5
    assert policy.delay_for(2) == 3.0


def test_step_accepts_timeout_ms_and_derives_tool():
    step = WorkflowStep.model_validate(
        {"id": "s", "call": "/functions/v1/agent-proxy/clo/begin-week", "timeout_ms": 8000}
    )
    assert step.timeout_seconds == 8
    assert step.tool_name == "clo"
    assert step.retry.max_attempts == 5


@pytest.mark.parametrize(
    "path,tool",
    [
        ("/functions/v1/agent-proxy/snapshot", "snapshot"),
        ("/functions/v1/instructor-agent?x=1", "instructor-agent"),
        ("coding-workspace/start", "coding-workspace"),
        ("/", "unknown"),
    ],
)
def test_tool_from_path(path, tool):
    assert tool_from_path(path) == tool


def test_validate_graph_accepts_diamond():
    spec = _spec(
        {"id": "a", "call": "/a"},
        {"id": "b", "call": "/b", "depends_on": ["a"]},
        {"id": "c", "call": "/c", "depends_on": ["a"]},
        {"id": "d", "call": "/d", "depends_on": ["b", "c"]},
    )
    spec.validate_graph()
    assert [s.id for s in spec.root_steps()] == ["a"]
    assert [s.id for s in spec.dependents_of("a")] == ["b", "c"]


@pytest.mark.parametrize(
    "steps,message",
    [
        ([], "no steps"),
        ([{"id": "a", "call": "/a"}, {"id": "a", "call": "/b"}], "duplicate"),
        ([{"id": "a", "call": "/a", "depends_on": ["ghost"]}], "unknown"),
        (
            [
                {"id": "a", "call": "/a", "depends_on": ["b"]},
                {"id": "b", "call": "/b", "depends_on": ["a"]},
            ],
            "no step without dependencies",
        ),
        (
            [
                {"id": "root", "call": "/r"},
                {"id": "a", "call": "/a", "depends_on": ["root", "b"]},
                {"id": "b", "call": "/b", "depends_on": ["a"]},
            ],
            "cycle",
        ),
        (
            [
                {"id": "a", "call": "/a"},
                {"id": "b", "call": "/b", "body_from": "a"},
            ],
            "without depending",
        ),
    ],
)
def test_validate_graph_rejects_malformed(steps, message):
    with pytest.raises(MalformedWorkflowError, match=message):
        _spec(*steps).validate_graph()
