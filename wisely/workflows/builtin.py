"""Workflow definitions compiled into the package.

These mirror the YAML files under ``definitions/`` and are used whenever the
configured workflow source cannot provide a key.
"""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import WorkflowSpec

BUILTIN_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "daily_instructor_v1": {
        "key": "daily_instructor_v1",
        "trigger": {
            "type": "cron_or_event",
            "event_types": ["streak_ping", "user_start_day"],
            "cron": "0 7 * * *",
        },
        "steps": [
            {
                "id": "gather_signals",
                "call": "/functions/v1/agent-proxy/snapshot",
                "method": "GET",
                "timeout_ms": 8000,
                "retry": {"max_attempts": 3, "backoff": "exp", "base_ms": 1500},
            },
            {
                "id": "create_plan",
                "call": "/functions/v1/agent-proxy/instructor/daily",
                "method": "POST",
                "body_from": "gather_signals",
                "headers": {"X-Idempotency-Key": "${workflow_run_id}-create_plan"},
                "timeout_ms": 15000,
                "depends_on": ["gather_signals"],
            },
            {
                "id": "notify",
                "call": "/functions/v1/agent-proxy/notify",
                "method": "POST",
                "body": {"channel": "inbox", "message": "Your plan is ready"},
                "depends_on": ["create_plan"],
            },
        ],
    },
    "weekly_seed_v1": {
        "key": "weekly_seed_v1",
        "trigger": {"type": "cron", "cron": "0 18 * * SUN"},
        "steps": [
            {
                "id": "clo_begin_week",
                "call": "/functions/v1/agent-proxy/clo/begin-week",
                "method": "POST",
            },
            {
                "id": "ta_generate_week",
                "call": "/functions/v1/agent-proxy/ta/generate-week",
                "method": "POST",
                "depends_on": ["clo_begin_week"],
            },
            {
                "id": "socratic_seed",
                "call": "/functions/v1/agent-proxy/socratic/seed",
                "method": "POST",
                "depends_on": ["clo_begin_week"],
            },
            {
                "id": "brand_ingest",
                "call": "/functions/v1/agent-proxy/brand/update-briefing",
                "method": "POST",
                "depends_on": ["ta_generate_week", "socratic_seed"],
            },
        ],
    },
}


def builtin_workflow(key: str) -> WorkflowSpec | None:
    data = BUILTIN_DEFINITIONS.get(key)
    return WorkflowSpec.model_validate(data) if data is not None else None
