"""Phase state machine driving a user's daily learning session."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..constants import SESSION_EVENT_LEASE_SECONDS
from ..errors import LogicError, PreconditionError, SessionBusyError, ValidationError, WiselyError
from ..persistence.models import AuditEvent
from ..persistence.repository import AuditStore, SessionStore
from ..tools.calls import (
    CheckComprehension,
    DeliverLecture,
    FinalReview,
    GenerateExercises,
    GenerateQuestions,
    ModifyPracticePrompts,
    PlanDay,
    StartWorkspace,
    ToolCall,
    ToolCallArgs,
    WorkspaceFile,
)
from ..tools.registry import ToolRegistry
from ..tools.results import ToolResult, parse_tool_result
from ..utils.time import Clock, utcnow
from .models import EVENT_PHASE, PHASE_ORDER, Artifact, EducationSession, next_phase

logger = logging.getLogger(__name__)

# Event the session waits for in each phase.
NEXT_EVENT: Dict[str, Optional[str]] = {
    phase: event for event, phase in EVENT_PHASE.items()
}
NEXT_EVENT["completed"] = None

PRACTICE_TYPES = ("coding", "socratic", "exercises")

# Artifact whose freshness the caller's ETag refers to, per event.
PRIMARY_ARTIFACT: Dict[str, str] = {
    "start_day": "lecture",
    "lecture_done": "comprehension",
    "check_done": "modified_prompts",
    "practice_ready": "practice",
    "practice_done": "review",
}


class EventResult(BaseModel):
    """Outcome of one session event as returned to the caller."""

    ok: bool
    session_id: str
    phase: str
    next: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    degraded: bool = False
    rate_limited: bool = False
    not_modified: bool = False
    status_code: Optional[int] = None
    etag: Optional[str] = None


class _HandlerContext(BaseModel):
    """Mutable state threaded through one event handler."""

    session: EducationSession
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    etag_if_none_match: Optional[str] = None
    produced: Dict[str, Any] = Field(default_factory=dict)
    local: Dict[str, Artifact] = Field(default_factory=dict)
    primary_not_modified: bool = False
    primary_etag: Optional[str] = None

    def value(self, name: str, default: Any = None) -> Any:
        if name in self.produced:
            return self.produced[name]
        if name in self.local:
            return self.local[name].value
        return self.session.artifact_value(name, default)

    def keep(self, name: str, value: Any) -> None:
        """Record an artifact that needs no tool call."""
        self.local[name] = Artifact(value=value, phase=self.session.phase)
        self.produced[name] = value


Handler = Callable[[_HandlerContext], Awaitable[Optional[ToolResult]]]


class SessionStateMachine:
    """Sequence a session through its phases, one event at a time.

    Each event checks the session is in the phase the event belongs to,
    holds a short lease on the session while its handler runs, persists every
    successful tool output as soon as it arrives and advances the phase only
    when the whole handler succeeded.
    """

    def __init__(
        self,
        store: SessionStore,
        registry: ToolRegistry,
        audit: Optional[AuditStore] = None,
        now: Optional[Clock] = None,
        lease_seconds: float = SESSION_EVENT_LEASE_SECONDS,
    ) -> None:
        self.store = store
        self.registry = registry
        self.audit = audit
        self._now = now or utcnow
        self.lease_seconds = lease_seconds
        self._handlers: Dict[str, Handler] = {
            "start_day": self._start_day,
            "lecture_done": self._lecture_done,
            "check_done": self._check_done,
            "practice_ready": self._practice_ready,
            "practice_done": self._practice_done,
            "reflect_done": self._reflect_done,
        }

    async def get_session(self, user_id: str, week: int = 1, day: int = 1) -> EducationSession | None:
        return await self.store.get_session(user_id, week, day)

    async def handle_event(
        self,
        user_id: str,
        event: str,
        week: int = 1,
        day: int = 1,
        payload: Optional[Dict[str, Any]] = None,
        etag_if_none_match: Optional[str] = None,
    ) -> EventResult:
        """Apply ``event`` to the user's session for ``week`` and ``day``.

        Raises:
            ValidationError: unknown event or malformed payload.
            PreconditionError: the session is not in the event's phase.
            SessionBusyError: another event for the session is in flight.
            LogicError: a tool answered without the fields the phase needs.
        """
        if not user_id:
            raise ValidationError("Missing userId")
        if event not in EVENT_PHASE:
            raise ValidationError(f"Unknown event: {event}")
        payload = payload or {}
        self._validate_payload(event, payload)

        session = await self._acquire(user_id, week, day, event)
        ctx = _HandlerContext(
            session=session,
            event=event,
            payload=payload,
            etag_if_none_match=etag_if_none_match,
        )
        released = False
        try:
            failure = await self._handlers[event](ctx)
            if failure is not None:
                logger.warning(
                    f"Session {session.session_id} event {event} failed: {failure.error}"
                )
                return self._failure_result(session, failure)
            session = await self._advance(ctx)
            released = True
        finally:
            if not released:
                await self._release(user_id, week, day)

        logger.info(
            f"Session {session.session_id} ({user_id} w{week}d{day}) "
            f"{event} -> {session.phase}"
        )
        await self._record(
            AuditEvent(
                user_id=user_id,
                type=f"session_{event}",
                payload={
                    "session_id": session.session_id,
                    "week": week,
                    "day": day,
                    "phase": session.phase,
                },
                created_at=self._now(),
            )
        )
        return EventResult(
            ok=True,
            session_id=session.session_id,
            phase=session.phase,
            next=NEXT_EVENT[session.phase],
            data=None if ctx.primary_not_modified else ctx.produced,
            not_modified=ctx.primary_not_modified,
            etag=session.etag,
        )

    # ------------------------------------------------------------------
    # Session bookkeeping
    @staticmethod
    def _validate_payload(event: str, payload: Dict[str, Any]) -> None:
        if event == "practice_ready":
            practice_type = payload.get("practiceType") or payload.get("practice_type")
            if practice_type not in PRACTICE_TYPES:
                raise ValidationError(
                    f"practiceType must be one of {', '.join(PRACTICE_TYPES)}"
                )
        elif event == "practice_done" and payload.get("fs") is not None:
            files = payload["fs"]
            if not isinstance(files, list):
                raise ValidationError("fs must be a list of {path, content} objects")
            try:
                for f in files:
                    WorkspaceFile.model_validate(f)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid workspace file: {e}") from e

    async def _acquire(self, user_id: str, week: int, day: int, event: str) -> EducationSession:
        now = self._now()
        required = EVENT_PHASE[event]

        def _apply(session: EducationSession) -> EducationSession:
            if session.is_busy(now):
                raise SessionBusyError(
                    f"Session {session.session_id} is processing another event"
                )
            if session.phase != required:
                if PHASE_ORDER.index(session.phase) > PHASE_ORDER.index(required):
                    detail = "already passed"
                else:
                    detail = "not reached yet"
                raise PreconditionError(
                    f"Event {event} requires phase {required} ({detail}); "
                    f"session is in {session.phase}"
                )
            session.busy_until = now + timedelta(seconds=self.lease_seconds)
            return session.model_copy(deep=True)

        return await self.store.update_session(user_id, week, day, _apply, now=now)

    async def _release(self, user_id: str, week: int, day: int) -> None:
        def _apply(session: EducationSession) -> None:
            session.busy_until = None

        await self.store.update_session(user_id, week, day, _apply, now=self._now())

    async def _persist(self, ctx: _HandlerContext, artifacts: Dict[str, Artifact]) -> None:
        session = ctx.session

        def _apply(current: EducationSession) -> None:
            current.merge_artifacts(artifacts)

        await self.store.update_session(
            session.user_id, session.week, session.day, _apply, now=self._now()
        )
        session.merge_artifacts(artifacts)

    async def _advance(self, ctx: _HandlerContext) -> EducationSession:
        session = ctx.session
        new_phase = next_phase(session.phase)

        def _apply(current: EducationSession) -> EducationSession:
            current.merge_artifacts(ctx.local)
            current.phase = new_phase
            current.busy_until = None
            if ctx.primary_etag:
                current.etag = ctx.primary_etag
            return current.model_copy(deep=True)

        return await self.store.update_session(
            session.user_id, session.week, session.day, _apply, now=self._now()
        )

    @staticmethod
    def _failure_result(session: EducationSession, failure: ToolResult) -> EventResult:
        return EventResult(
            ok=False,
            session_id=session.session_id,
            phase=session.phase,
            next=NEXT_EVENT[session.phase],
            error=failure.error,
            degraded=failure.degraded,
            rate_limited=failure.rate_limited,
            status_code=failure.status_code,
        )

    async def _record(self, event: AuditEvent) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record_event(event)
        except WiselyError as e:
            logger.warning(f"Failed to record audit event {event.type}: {e}")

    # ------------------------------------------------------------------
    # Tool calls
    async def _call(
        self,
        ctx: _HandlerContext,
        tool_call: ToolCall,
        artifact: str,
        required: Sequence[str] = (),
    ) -> Optional[ToolResult]:
        """Invoke a tool for ``artifact``; returns the failure, if any."""
        session = ctx.session
        primary = PRIMARY_ARTIFACT.get(ctx.event) == artifact
        cached = session.artifacts.get(artifact)
        etag = cached.etag if cached else None
        if primary and ctx.etag_if_none_match:
            etag = ctx.etag_if_none_match

        result = await self.registry.call(
            tool_call,
            ToolCallArgs(
                user_id=session.user_id,
                week=session.week,
                day=session.day,
                correlation_id=session.session_id,
                etag_if_none_match=etag,
                idempotency_key=f"{session.session_id}-{ctx.event}-{artifact}",
            ),
        )
        if not result.ok:
            return result

        if result.not_modified:
            if primary:
                ctx.primary_not_modified = True
                ctx.primary_etag = result.etag or etag
            if cached is not None:
                ctx.produced[artifact] = cached.value
            return None

        data = parse_tool_result(result, required)
        if data is None:
            raise LogicError(
                f"{tool_call.tool} returned no usable {artifact} "
                f"(required: {', '.join(required) or 'object'})"
            )
        ctx.produced[artifact] = data
        if primary:
            ctx.primary_etag = result.etag
        await self._persist(
            ctx,
            {
                artifact: Artifact(
                    value=data,
                    tool=tool_call.tool,
                    etag=result.etag,
                    phase=session.phase,
                    updated_at=self._now(),
                )
            },
        )
        return None

    # ------------------------------------------------------------------
    # Event handlers
    async def _start_day(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        failure = await self._call(ctx, PlanDay(topic=ctx.payload.get("topic")), "clo_day")
        if failure is not None:
            return failure
        return await self._call(
            ctx,
            DeliverLecture(base_prompt=ctx.value("clo_day")),
            "lecture",
            required=("content",),
        )

    async def _lecture_done(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        lecture_context = ctx.payload.get("lectureContext") or ctx.value("lecture")
        return await self._call(
            ctx, CheckComprehension(lecture_context=lecture_context), "comprehension"
        )

    async def _check_done(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        return await self._call(
            ctx,
            ModifyPracticePrompts(
                understanding_map=ctx.payload.get("understandingMap")
                or ctx.value("comprehension"),
                clo_daily_prompts=ctx.payload.get("cloDailyPrompts") or ctx.value("clo_day"),
            ),
            "modified_prompts",
        )

    async def _practice_ready(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        practice_type = ctx.payload.get("practiceType") or ctx.payload.get("practice_type")
        modified_prompt = ctx.value("modified_prompts")
        if practice_type == "coding":
            tool_call: ToolCall = StartWorkspace(
                language=ctx.payload.get("language", "python"),
                focus_areas=ctx.payload.get("focusAreas", []),
                rubric=ctx.payload.get("rubric"),
            )
        elif practice_type == "socratic":
            tool_call = GenerateQuestions(modified_prompt=modified_prompt)
        else:
            tool_call = GenerateExercises(modified_prompt=modified_prompt)
        ctx.keep("practice_type", practice_type)
        return await self._call(ctx, tool_call, "practice")

    async def _practice_done(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        ctx.keep("practice_results", ctx.payload.get("results"))
        files = ctx.payload.get("fs")
        if ctx.value("practice_type") == "coding" and files:
            return await self._call(
                ctx,
                FinalReview(
                    fs=[WorkspaceFile.model_validate(f) for f in files],
                    rubric=ctx.payload.get("rubric"),
                ),
                "review",
            )
        return None

    async def _reflect_done(self, ctx: _HandlerContext) -> Optional[ToolResult]:
        ctx.keep("reflection", ctx.payload.get("reflection") or ctx.payload.get("reflect"))
        return None
