"""Per-key token bucket rate limiter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..utils.time import Clock, utcnow
from .models import (
    RateLimitBucket,
    RateLimitConfig,
    RateLimitStatus,
    refill,
    resize,
    try_consume,
)

if TYPE_CHECKING:
    from ..persistence.repository import RateLimitStore

logger = logging.getLogger(__name__)


def user_key(user_id: str, tool: str) -> str:
    """Bucket key for one user calling one tool."""
    return f"user:{user_id}:agent:{tool}"


def global_key(tool: str) -> str:
    """Bucket key shared by every caller of a tool."""
    return f"global:agent:{tool}"


class RateLimiter:
    """Admit or deny calls against persisted token buckets.

    Each admission is a single atomic read-modify-write on the bucket's key;
    unrelated keys never contend with each other.
    """

    def __init__(
        self,
        store: RateLimitStore,
        default_config: Optional[RateLimitConfig] = None,
        now: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._default = default_config or RateLimitConfig()
        self._now = now or utcnow

    async def admit(
        self,
        key: str,
        tokens_required: float = 1,
        config: Optional[RateLimitConfig] = None,
    ) -> bool:
        """Consume ``tokens_required`` from ``key`` if enough are available.

        An explicit ``config`` also resizes an existing bucket, so per-tool
        limits apply even to buckets created under older settings.
        """
        explicit = config is not None
        config = config or self._default
        now = self._now()

        def _apply(bucket: RateLimitBucket | None) -> tuple[RateLimitBucket, bool]:
            if bucket is None:
                bucket = RateLimitBucket.create(key, config, now)
            elif explicit:
                bucket = resize(bucket, config, now)
            return try_consume(bucket, tokens_required, now)

        admitted = await self._store.modify_bucket(key, _apply)
        if not admitted:
            logger.info(f"Rate limit denied for {key} ({tokens_required} tokens)")
        return admitted

    async def get_status(self, key: str) -> RateLimitStatus | None:
        """Current token count for ``key`` without consuming anything."""
        bucket = await self._store.get_bucket(key)
        if bucket is None:
            return None
        current = refill(bucket, self._now())
        return RateLimitStatus(
            key=key,
            current_tokens=current.tokens,
            capacity=bucket.capacity,
            refill_rate=bucket.refill_rate,
            last_refill_at=bucket.last_refill_at,
            next_refill_in=max(0.0, 1 / bucket.refill_rate),
        )

    async def reset(self, key: str, config: Optional[RateLimitConfig] = None) -> None:
        """Restore ``key`` to full capacity."""
        now = self._now()

        def _apply(bucket: RateLimitBucket | None) -> tuple[RateLimitBucket, None]:
            if bucket is None:
                return RateLimitBucket.create(key, config or self._default, now), None
            if config is not None:
                bucket = bucket.model_copy(
                    update={"capacity": config.capacity, "refill_rate": config.refill_rate}
                )
            return bucket.model_copy(
                update={"tokens": bucket.capacity, "last_refill_at": now}
            ), None

        await self._store.modify_bucket(key, _apply)
        logger.info(f"Rate limit reset for {key}")
