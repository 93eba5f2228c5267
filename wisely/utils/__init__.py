"""Small helpers shared by wisely modules."""

from .retry import compute_backoff
from .time import utcnow

__all__ = ["compute_backoff", "utcnow"]
