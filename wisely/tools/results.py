"""Outcome of a tool invocation and helpers to interpret it."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..constants import NETWORK_FAILURE_STATUS, RATE_LIMITED_STATUS

M = TypeVar("M", bound=BaseModel)


class Fresh(BaseModel):
    """The service returned new data."""

    kind: Literal["fresh"] = "fresh"
    data: Any = None
    etag: Optional[str] = None


class NotModified(BaseModel):
    """The service confirmed the caller's cached copy is still current."""

    kind: Literal["not_modified"] = "not_modified"
    etag: Optional[str] = None


ConditionalResult = Annotated[Union[Fresh, NotModified], Field(discriminator="kind")]


class ToolResult(BaseModel):
    """Normalised result of one call to a reasoning service.

    ``degraded`` marks infrastructure failures that are safe to retry;
    ``rate_limited`` marks calls the local rate limiter refused to send.
    """

    ok: bool
    value: Optional[ConditionalResult] = None
    error: Optional[str] = None
    etag: Optional[str] = None
    degraded: bool = False
    rate_limited: bool = False
    status_code: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def data(self) -> Any:
        if isinstance(self.value, Fresh):
            return self.value.data
        return None

    @property
    def not_modified(self) -> bool:
        return isinstance(self.value, NotModified)

    @classmethod
    def fresh(cls, data: Any, etag: Optional[str] = None, status_code: int = 200) -> "ToolResult":
        return cls(
            ok=True, value=Fresh(data=data, etag=etag), etag=etag, status_code=status_code
        )

    @classmethod
    def unchanged(cls, etag: Optional[str] = None) -> "ToolResult":
        return cls(ok=True, value=NotModified(etag=etag), etag=etag, status_code=304)

    @classmethod
    def failure(
        cls,
        error: str,
        status_code: Optional[int] = None,
        degraded: bool = False,
        etag: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> "ToolResult":
        return cls(
            ok=False,
            error=error,
            status_code=status_code,
            degraded=degraded,
            etag=etag,
            retry_after=retry_after,
        )

    @classmethod
    def network_failure(cls, error: str) -> "ToolResult":
        return cls.failure(error, status_code=NETWORK_FAILURE_STATUS, degraded=True)

    @classmethod
    def denied(cls, key: str, retry_after: Optional[float] = None) -> "ToolResult":
        return cls(
            ok=False,
            error=f"Rate limit exceeded for {key}",
            rate_limited=True,
            status_code=RATE_LIMITED_STATUS,
            retry_after=retry_after,
        )


def parse_tool_result(
    result: ToolResult,
    required_fields: Sequence[str] = (),
    model: Optional[Type[M]] = None,
) -> Union[dict, M, None]:
    """Return the result's data when it carries every required field.

    ``None`` means the result cannot be used: the call failed, the service
    answered "not modified", or the payload is missing a required field or
    does not validate against ``model``.
    """
    if not result.ok or not isinstance(result.value, Fresh):
        return None
    data = result.value.data
    if not isinstance(data, dict):
        return None
    if any(data.get(field) is None for field in required_fields):
        return None
    if model is None:
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError:
        return None
