"""Daily learning session state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..utils.time import utcnow

Phase = Literal[
    "planning",
    "lecture",
    "check",
    "practice_prep",
    "practice",
    "reflect",
    "completed",
]
SessionEvent = Literal[
    "start_day",
    "lecture_done",
    "check_done",
    "practice_ready",
    "practice_done",
    "reflect_done",
]
PracticeType = Literal["coding", "socratic", "exercises"]

PHASE_ORDER: List[str] = [
    "planning",
    "lecture",
    "check",
    "practice_prep",
    "practice",
    "reflect",
    "completed",
]

# Phase each event must find the session in.
EVENT_PHASE: Dict[str, str] = {
    "start_day": "planning",
    "lecture_done": "lecture",
    "check_done": "check",
    "practice_ready": "practice_prep",
    "practice_done": "practice",
    "reflect_done": "reflect",
}


def next_phase(phase: str) -> str:
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[min(index + 1, len(PHASE_ORDER) - 1)]


def phase_index(phase: str) -> int:
    return PHASE_ORDER.index(phase)


class Artifact(BaseModel):
    """Output of one phase, with the ETag it was served under."""

    value: Any = None
    tool: Optional[str] = None
    etag: Optional[str] = None
    phase: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class EducationSession(BaseModel):
    """One user's learning flow for a given week and day."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    week: int = 1
    day: int = 1
    phase: Phase = "planning"
    artifacts: Dict[str, Artifact] = Field(default_factory=dict)
    etag: Optional[str] = None
    busy_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def artifact_value(self, name: str, default: Any = None) -> Any:
        artifact = self.artifacts.get(name)
        return artifact.value if artifact is not None else default

    def merge_artifacts(self, artifacts: Dict[str, Artifact]) -> None:
        """Add or refresh artifacts; existing names are never removed."""
        self.artifacts.update(artifacts)

    def is_busy(self, now: datetime) -> bool:
        return self.busy_until is not None and self.busy_until > now
