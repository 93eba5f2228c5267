"""Read-only status summaries for a user."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .cron import next_run
from .persistence.repository import Store
from .session.models import EducationSession
from .utils.time import Clock, utcnow
from .workflows.loader import WorkflowLoader

# How long a tool's latest output counts as fresh.
FRESHNESS_WINDOWS: Dict[str, timedelta] = {
    "clo": timedelta(hours=168),
    "alex": timedelta(hours=336),
    "ta": timedelta(hours=72),
    "socratic": timedelta(hours=168),
    "instructor": timedelta(hours=24),
    "coding_workspace": timedelta(hours=24),
}

DAYS_PER_WEEK = 5


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class StatusService:
    """Summarise runs, sessions and signal freshness without side effects."""

    def __init__(
        self,
        store: Store,
        loader: Optional[WorkflowLoader] = None,
        now: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.loader = loader or WorkflowLoader()
        self._now = now or utcnow

    async def summary(self, user_id: str) -> Dict[str, Any]:
        now = self._now()
        runs = await self.store.list_runs(user_id=user_id, limit=1000)
        jobs = await self.store.list_jobs(user_id=user_id)
        sessions = await self.store.list_sessions(user_id)

        active = next((run for run in runs if run.status == "running"), None)
        active_run = None
        if active is not None:
            active_run = {
                "run_id": active.run_id,
                "workflow_key": active.workflow_key,
                "created_at": _iso(active.created_at),
                "steps": {
                    job.step_id: job.status for job in jobs if job.run_id == active.run_id
                },
            }

        latest = sessions[0] if sessions else None
        return {
            "user_id": user_id,
            "active_run": active_run,
            "latest_session": self._session_summary(latest),
            "signal_freshness": self._freshness(sessions, now),
            "next_session": self._next_session(latest),
            "next_scheduled_run": self._next_scheduled(now),
            "stats": {
                "runs": dict(Counter(run.status for run in runs)),
                "jobs": dict(Counter(job.status for job in jobs)),
                "sessions_total": len(sessions),
                "sessions_completed": sum(1 for s in sessions if s.phase == "completed"),
            },
        }

    @staticmethod
    def _session_summary(session: Optional[EducationSession]) -> Optional[Dict[str, Any]]:
        if session is None:
            return None
        return {
            "session_id": session.session_id,
            "week": session.week,
            "day": session.day,
            "phase": session.phase,
            "artifacts": sorted(session.artifacts),
            "updated_at": _iso(session.updated_at),
        }

    @staticmethod
    def _freshness(sessions: list[EducationSession], now: datetime) -> Dict[str, Dict[str, Any]]:
        latest: Dict[str, datetime] = {}
        for session in sessions:
            for artifact in session.artifacts.values():
                if artifact.tool and (
                    artifact.tool not in latest or artifact.updated_at > latest[artifact.tool]
                ):
                    latest[artifact.tool] = artifact.updated_at
        freshness = {}
        for tool, window in FRESHNESS_WINDOWS.items():
            updated = latest.get(tool)
            freshness[tool] = {
                "available": updated is not None,
                "fresh": updated is not None and now - updated <= window,
                "last_updated": _iso(updated),
            }
        return freshness

    @staticmethod
    def _next_session(latest: Optional[EducationSession]) -> Dict[str, int]:
        if latest is None:
            return {"week": 1, "day": 1}
        if latest.phase != "completed":
            return {"week": latest.week, "day": latest.day}
        if latest.day < DAYS_PER_WEEK:
            return {"week": latest.week, "day": latest.day + 1}
        return {"week": latest.week + 1, "day": 1}

    def _next_scheduled(self, now: datetime) -> Optional[Dict[str, Any]]:
        upcoming = [
            (at, spec.key)
            for spec in self.loader.all()
            if (at := next_run(spec, now)) is not None
        ]
        if not upcoming:
            return None
        at, key = min(upcoming)
        return {"workflow_key": key, "at": at.isoformat()}
