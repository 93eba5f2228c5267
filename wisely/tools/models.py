"""Pydantic models describing registered reasoning tools."""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..ratelimit.models import RateLimitConfig


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


class ToolDescriptor(BaseModel):
    """Metadata describing a reasoning service reachable through the registry."""

    name: str
    version: SemanticVersion
    endpoint: str = Field(..., description="Function path below /functions/v1")
    agent: Optional[str] = Field(
        default=None, description="Agent name when routed through the agent proxy"
    )
    rate_limit_per_minute: int = Field(default=6, gt=0)
    description: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _parse_version(cls, v: Any) -> Any:
        if isinstance(v, str):
            return SemanticVersion.parse(v)
        return v

    @field_validator("endpoint")
    @classmethod
    def _strip_slashes(cls, v: str) -> str:
        if not v.strip("/"):
            raise ValueError("endpoint must be a non-empty path")
        return v.strip("/")

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig.per_minute(self.rate_limit_per_minute)


DEFAULT_TOOLS: List[ToolDescriptor] = [
    ToolDescriptor(
        name="clo",
        version="3.1.0",
        endpoint="agent-proxy",
        agent="clo",
        rate_limit_per_minute=4,
        description="Curriculum planner producing weekly and daily plans",
    ),
    ToolDescriptor(
        name="instructor",
        version="2.2.0",
        endpoint="instructor-agent",
        rate_limit_per_minute=4,
        description="Lecture delivery, comprehension checks and prompt tailoring",
    ),
    ToolDescriptor(
        name="ta",
        version="1.5.0",
        endpoint="agent-proxy",
        agent="ta",
        rate_limit_per_minute=6,
        description="Structured exercise generator",
    ),
    ToolDescriptor(
        name="socratic",
        version="3.1.0",
        endpoint="agent-proxy",
        agent="socratic",
        rate_limit_per_minute=8,
        description="Guided question dialogue",
    ),
    ToolDescriptor(
        name="alex",
        version="3.1.0",
        endpoint="coding-workspace/alex",
        rate_limit_per_minute=3,
        description="Code reviewer for workspace submissions",
    ),
    ToolDescriptor(
        name="coding_workspace",
        version="1.0.0",
        endpoint="coding-workspace",
        rate_limit_per_minute=8,
        description="Sandboxed coding workspace",
    ),
    ToolDescriptor(
        name="brand",
        version="3.0.0",
        endpoint="agent-proxy",
        agent="brand",
        rate_limit_per_minute=2,
        description="Personal brand briefing updates",
    ),
]
