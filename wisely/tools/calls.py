"""Typed tool calls, one variant per tool action."""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ToolCallArgs(BaseModel):
    """Caller context shared by every tool call."""

    user_id: str
    week: Optional[int] = None
    day: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    etag_if_none_match: Optional[str] = None
    idempotency_key: Optional[str] = None


class WorkspaceFile(BaseModel):
    path: str
    content: str


class _ToolCall(BaseModel):
    """Base for the typed call variants.

    Subclasses name the tool they target and, where the service exposes one
    function per action, the sub path below the tool's endpoint.
    """

    tool: ClassVar[str]
    sub_path: ClassVar[Optional[str]] = None

    action: str

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {}

    def request_body(self, args: ToolCallArgs, agent: Optional[str] = None) -> Dict[str, Any]:
        """Body in the ``{agent?, action, payload, userId}`` shape services accept."""
        payload = dict(args.payload)
        payload.update(
            {k: v for k, v in self.build_payload(args).items() if v is not None}
        )
        body: Dict[str, Any] = {}
        if agent:
            body["agent"] = agent
        body.update(action=self.action, payload=payload, userId=args.user_id)
        return body


class _CloCall(_ToolCall):
    tool: ClassVar[str] = "clo"

    def request_body(self, args: ToolCallArgs, agent: Optional[str] = None) -> Dict[str, Any]:
        body = super().request_body(args, agent)
        if args.week is not None:
            body["weekNumber"] = args.week
        return body


# ----------------------------------------------------------------------
# clo
class PlanWeek(_CloCall):
    action: Literal["GET_WEEKLY_PLAN"] = "GET_WEEKLY_PLAN"
    topic: Optional[str] = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"topic": self.topic, "week": args.week}


class PlanDay(_CloCall):
    action: Literal["GET_DAILY_LESSON"] = "GET_DAILY_LESSON"
    topic: Optional[str] = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"topic": self.topic, "day": args.day, "week": args.week}


# ----------------------------------------------------------------------
# instructor
class DeliverLecture(_ToolCall):
    tool: ClassVar[str] = "instructor"
    action: Literal["DELIVER_LECTURE"] = "DELIVER_LECTURE"
    base_prompt: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"basePrompt": self.base_prompt, "week": args.week, "day": args.day}


class CheckComprehension(_ToolCall):
    tool: ClassVar[str] = "instructor"
    action: Literal["CHECK_COMPREHENSION"] = "CHECK_COMPREHENSION"
    lecture_context: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"lectureContext": self.lecture_context}


class ModifyPracticePrompts(_ToolCall):
    tool: ClassVar[str] = "instructor"
    action: Literal["MODIFY_PRACTICE_PROMPTS"] = "MODIFY_PRACTICE_PROMPTS"
    understanding_map: Any = None
    clo_daily_prompts: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {
            "understandingMap": self.understanding_map,
            "cloDailyPrompts": self.clo_daily_prompts,
        }


# ----------------------------------------------------------------------
# practice generators
class GenerateExercises(_ToolCall):
    tool: ClassVar[str] = "ta"
    action: Literal["GENERATE_EXERCISES"] = "GENERATE_EXERCISES"
    modified_prompt: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"modifiedPrompt": self.modified_prompt}


class GenerateQuestions(_ToolCall):
    tool: ClassVar[str] = "socratic"
    action: Literal["GENERATE_QUESTIONS"] = "GENERATE_QUESTIONS"
    modified_prompt: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"modifiedPrompt": self.modified_prompt}


# ----------------------------------------------------------------------
# alex
class PreReview(_ToolCall):
    tool: ClassVar[str] = "alex"
    sub_path: ClassVar[Optional[str]] = "pre"
    action: Literal["PRE_REVIEW"] = "PRE_REVIEW"
    fs: List[WorkspaceFile] = Field(default_factory=list)
    rubric: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {"fs": [f.model_dump() for f in self.fs], "rubric": self.rubric}


class FinalReview(PreReview):
    sub_path: ClassVar[Optional[str]] = "final"
    action: Literal["FINAL_REVIEW"] = "FINAL_REVIEW"


# ----------------------------------------------------------------------
# coding workspace
class StartWorkspace(_ToolCall):
    tool: ClassVar[str] = "coding_workspace"
    sub_path: ClassVar[Optional[str]] = "start"
    action: Literal["START"] = "START"
    language: str = "python"
    focus_areas: List[str] = Field(default_factory=list)
    rubric: Any = None

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {
            "language": self.language,
            "focusAreas": self.focus_areas,
            "rubric": self.rubric,
            "week": args.week,
            "day": args.day,
        }


class RunWorkspace(_ToolCall):
    tool: ClassVar[str] = "coding_workspace"
    sub_path: ClassVar[Optional[str]] = "run"
    action: Literal["RUN"] = "RUN"
    fs: List[WorkspaceFile] = Field(default_factory=list)
    language: str = "python"
    tests: bool = False

    def build_payload(self, args: ToolCallArgs) -> Dict[str, Any]:
        return {
            "fs": [f.model_dump() for f in self.fs],
            "language": self.language,
            "tests": self.tests,
        }


ToolCall = Annotated[
    Union[
        PlanWeek,
        PlanDay,
        DeliverLecture,
        CheckComprehension,
        ModifyPracticePrompts,
        GenerateExercises,
        GenerateQuestions,
        PreReview,
        FinalReview,
        StartWorkspace,
        RunWorkspace,
    ],
    Field(discriminator="action"),
]

_tool_call_adapter: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


def parse_tool_call(data: Dict[str, Any]) -> ToolCall:
    """Build the typed call variant selected by ``data["action"]``."""
    return _tool_call_adapter.validate_python(data)
