"""HTTP transport for reasoning service calls."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from ..constants import DEFAULT_STEP_TIMEOUT_SECONDS
from .results import ToolResult

logger = logging.getLogger(__name__)

FUNCTIONS_PREFIX = "/functions/v1"


class ToolRequest(BaseModel):
    """A single outbound call to a reasoning service."""

    tool: str
    path: str
    method: str = "POST"
    body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    user_id: Optional[str] = None
    etag_if_none_match: Optional[str] = None
    idempotency_key: Optional[str] = None
    correlation_id: Optional[str] = None


def function_path(path: str) -> str:
    """Normalise ``path`` to an absolute ``/functions/v1/...`` path."""
    if path.startswith("/"):
        return path
    return f"{FUNCTIONS_PREFIX}/{path}"


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_response(
    response: httpx.Response, etag_if_none_match: Optional[str] = None
) -> ToolResult:
    """Turn an HTTP response into a :class:`ToolResult`."""
    etag = response.headers.get("ETag")
    if response.status_code == 304:
        return ToolResult.unchanged(etag or etag_if_none_match)

    try:
        body = response.json()
    except ValueError:
        body = None

    if not response.is_success:
        error = None
        if isinstance(body, dict):
            error = body.get("error") or body.get("message")
        return ToolResult.failure(
            str(error or response.reason_phrase or f"HTTP {response.status_code}"),
            status_code=response.status_code,
            degraded=response.status_code >= 500 or response.status_code == 429,
            etag=etag,
            retry_after=_retry_after(response),
        )

    if not isinstance(body, dict):
        return ToolResult.fresh(body, etag, response.status_code)

    # Services answer with {data}, {success, data} or {ok, data}.
    ok = body.get("ok")
    if ok is None:
        ok = body.get("success")
    if ok is None:
        ok = True
    if not ok:
        return ToolResult.failure(
            str(body.get("error") or "Unknown error"),
            status_code=response.status_code,
            etag=etag,
        )
    data = body["data"] if body.get("data") is not None else body
    return ToolResult.fresh(data, etag, response.status_code)


class ToolTransport:
    """Send :class:`ToolRequest` objects to the service gateway over HTTP."""

    def __init__(
        self,
        base_url: str,
        service_token: Optional[str] = None,
        timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self, request: ToolRequest) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        if request.etag_if_none_match:
            headers["If-None-Match"] = request.etag_if_none_match
        if request.idempotency_key:
            headers["X-Idempotency-Key"] = request.idempotency_key
        if request.correlation_id:
            headers["X-Correlation-Id"] = request.correlation_id
        headers.update(request.headers)
        return headers

    async def send(self, request: ToolRequest) -> ToolResult:
        """Perform the request; never raises for network or HTTP failures."""
        url = f"{self.base_url}{function_path(request.path)}"
        method = request.method.upper()
        timeout = request.timeout_seconds or self.timeout
        try:
            response = await self._get_client().request(
                method,
                url,
                json=request.body if method != "GET" and request.body is not None else None,
                headers=self._headers(request),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout after {timeout}s calling {request.tool} at {url}")
            return ToolResult.network_failure(f"Timeout calling {request.tool}: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Network error calling {request.tool} at {url}: {e}")
            return ToolResult.network_failure(f"Network error calling {request.tool}: {e}")

        return classify_response(response, request.etag_if_none_match)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ToolTransport":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()
