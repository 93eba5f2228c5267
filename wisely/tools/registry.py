"""Registry of reasoning tools with rate-limited invocation."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..errors import ValidationError
from ..ratelimit import RateLimitConfig, RateLimiter, user_key
from .calls import ToolCall, ToolCallArgs
from .models import DEFAULT_TOOLS, ToolDescriptor
from .results import ToolResult
from .transport import ToolRequest, ToolTransport

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Uniform entry point for calling reasoning services.

    Every invocation is admitted against the caller's per-tool bucket before
    the request leaves the process; a refusal comes back as a
    ``rate_limited`` result rather than an exception.
    """

    def __init__(
        self,
        transport: ToolTransport,
        limiter: RateLimiter,
        descriptors: Optional[Iterable[ToolDescriptor]] = None,
        rate_limits: Optional[Dict[str, int]] = None,
    ) -> None:
        self._transport = transport
        self._limiter = limiter
        self._tools: Dict[str, ToolDescriptor] = {}
        self._overrides = dict(rate_limits or {})
        for descriptor in descriptors if descriptors is not None else DEFAULT_TOOLS:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        self._tools[descriptor.name] = descriptor
        logger.debug(f"Registered tool {descriptor.name} v{descriptor.version}")

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def rate_limit_for(self, tool: str) -> Optional[RateLimitConfig]:
        """Bucket dimensions for ``tool``; ``None`` means the limiter default."""
        if tool in self._overrides:
            return RateLimitConfig.per_minute(self._overrides[tool])
        descriptor = self._tools.get(tool)
        return descriptor.rate_limit_config() if descriptor else None

    async def call(self, tool_call: ToolCall, args: ToolCallArgs) -> ToolResult:
        """Invoke a typed tool call on behalf of ``args.user_id``."""
        descriptor = self._tools.get(tool_call.tool)
        if descriptor is None:
            raise ValidationError(f"Unknown tool: {tool_call.tool}")
        path = descriptor.endpoint
        if tool_call.sub_path:
            path = f"{path}/{tool_call.sub_path}"
        request = ToolRequest(
            tool=descriptor.name,
            path=path,
            body=tool_call.request_body(args, descriptor.agent),
            user_id=args.user_id,
            etag_if_none_match=args.etag_if_none_match,
            idempotency_key=args.idempotency_key,
            correlation_id=args.correlation_id,
        )
        return await self.invoke(request)

    async def invoke(self, request: ToolRequest) -> ToolResult:
        """Admit and send a raw request."""
        if request.user_id:
            config = self.rate_limit_for(request.tool)
            key = user_key(request.user_id, request.tool)
            if not await self._limiter.admit(key, config=config):
                retry_after = 1 / config.refill_rate if config else None
                return ToolResult.denied(key, retry_after=retry_after)

        result = await self._transport.send(request)
        if result.ok:
            logger.info(
                f"Tool {request.tool} {request.method} {request.path} -> "
                f"{'304' if result.not_modified else result.status_code}"
            )
        else:
            logger.warning(
                f"Tool {request.tool} {request.method} {request.path} failed "
                f"({result.status_code}, degraded={result.degraded}): {result.error}"
            )
        return result
