"""Typed access to external reasoning services."""

from .calls import (
    CheckComprehension,
    DeliverLecture,
    FinalReview,
    GenerateExercises,
    GenerateQuestions,
    ModifyPracticePrompts,
    PlanDay,
    PlanWeek,
    PreReview,
    RunWorkspace,
    StartWorkspace,
    ToolCall,
    ToolCallArgs,
    WorkspaceFile,
    parse_tool_call,
)
from .models import DEFAULT_TOOLS, SemanticVersion, ToolDescriptor
from .registry import ToolRegistry
from .results import ConditionalResult, Fresh, NotModified, ToolResult, parse_tool_result
from .transport import ToolRequest, ToolTransport, classify_response

__all__ = [
    "CheckComprehension",
    "ConditionalResult",
    "DEFAULT_TOOLS",
    "DeliverLecture",
    "FinalReview",
    "Fresh",
    "GenerateExercises",
    "GenerateQuestions",
    "ModifyPracticePrompts",
    "NotModified",
    "PlanDay",
    "PlanWeek",
    "PreReview",
    "RunWorkspace",
    "SemanticVersion",
    "StartWorkspace",
    "ToolCall",
    "ToolCallArgs",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "ToolTransport",
    "WorkspaceFile",
    "classify_response",
    "parse_tool_call",
    "parse_tool_result",
]
