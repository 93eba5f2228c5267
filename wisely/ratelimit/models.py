"""Token bucket state and the refill arithmetic."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from ..constants import DEFAULT_BUCKET_CAPACITY, DEFAULT_REFILL_RATE


class RateLimitConfig(BaseModel):
    """Bucket dimensions for a key."""

    capacity: float = Field(default=DEFAULT_BUCKET_CAPACITY, gt=0)
    refill_rate: float = Field(default=DEFAULT_REFILL_RATE, gt=0)
    initial_tokens: Optional[float] = None

    @classmethod
    def per_minute(cls, calls: int) -> "RateLimitConfig":
        """Bucket allowing ``calls`` per minute with a burst of the same size."""
        return cls(capacity=calls, refill_rate=calls / 60.0)


class RateLimitBucket(BaseModel):
    """Persisted state of one token bucket."""

    key: str
    tokens: float
    capacity: float
    refill_rate: float
    last_refill_at: datetime

    @classmethod
    def create(cls, key: str, config: RateLimitConfig, now: datetime) -> "RateLimitBucket":
        tokens = config.capacity if config.initial_tokens is None else config.initial_tokens
        return cls(
            key=key,
            tokens=min(tokens, config.capacity),
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            last_refill_at=now,
        )


class RateLimitStatus(BaseModel):
    """Read-only view of a bucket at a point in time."""

    key: str
    current_tokens: float
    capacity: float
    refill_rate: float
    last_refill_at: datetime
    next_refill_in: float


def refill(bucket: RateLimitBucket, now: datetime) -> RateLimitBucket:
    """Return ``bucket`` topped up for the time elapsed until ``now``."""
    elapsed = max(0.0, (now - bucket.last_refill_at).total_seconds())
    tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
    return bucket.model_copy(update={"tokens": tokens, "last_refill_at": now})


def resize(bucket: RateLimitBucket, config: RateLimitConfig, now: datetime) -> RateLimitBucket:
    """Refill at the old rate, then adopt ``config``'s capacity and rate."""
    if bucket.capacity == config.capacity and bucket.refill_rate == config.refill_rate:
        return bucket
    refilled = refill(bucket, now)
    return refilled.model_copy(
        update={
            "tokens": min(refilled.tokens, config.capacity),
            "capacity": config.capacity,
            "refill_rate": config.refill_rate,
        }
    )


def try_consume(
    bucket: RateLimitBucket, tokens_required: float, now: datetime
) -> Tuple[RateLimitBucket, bool]:
    """Refill and, if possible, take ``tokens_required`` from the bucket.

    A denied request still returns the refilled bucket so the caller can
    persist it; the token count itself is left untouched.
    """
    refilled = refill(bucket, now)
    if refilled.tokens < tokens_required:
        return refilled, False
    return refilled.model_copy(update={"tokens": refilled.tokens - tokens_required}), True
