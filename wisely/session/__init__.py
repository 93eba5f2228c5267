"""Daily learning session state machine."""

from .machine import NEXT_EVENT, PRACTICE_TYPES, EventResult, SessionStateMachine
from .models import (
    EVENT_PHASE,
    PHASE_ORDER,
    Artifact,
    EducationSession,
    Phase,
    PracticeType,
    SessionEvent,
    next_phase,
    phase_index,
)

__all__ = [
    "Artifact",
    "EVENT_PHASE",
    "EducationSession",
    "EventResult",
    "NEXT_EVENT",
    "PHASE_ORDER",
    "PRACTICE_TYPES",
    "Phase",
    "PracticeType",
    "SessionEvent",
    "SessionStateMachine",
    "next_phase",
    "phase_index",
]
