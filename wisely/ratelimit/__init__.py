"""Token bucket rate limiting."""

from .limiter import RateLimiter, global_key, user_key
from .models import (
    RateLimitBucket,
    RateLimitConfig,
    RateLimitStatus,
    refill,
    resize,
    try_consume,
)

__all__ = [
    "RateLimiter",
    "RateLimitBucket",
    "RateLimitConfig",
    "RateLimitStatus",
    "global_key",
    "refill",
    "resize",
    "try_consume",
    "user_key",
]
