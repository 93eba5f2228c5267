from __future__ import annotations

import random
from typing import Literal, Optional

BackoffKind = Literal["exp", "linear", "fixed"]


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    kind: BackoffKind = "exp",
    cap: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """Compute the delay in seconds before retry number ``attempt``.

    ``attempt`` counts finished attempts, so the first retry uses ``attempt=1``.
    Exponential backoff yields ``base * 2 ** (attempt - 1)``. The optional
    ``cap`` bounds the deterministic part; ``jitter`` adds a uniform random
    amount on top.
    """
    attempt = max(1, attempt)
    if kind == "exp":
        delay = base * 2 ** (attempt - 1)
    elif kind == "linear":
        delay = base * attempt
    elif kind == "fixed":
        delay = base
    else:
        raise ValueError(f"Unknown backoff kind: {kind}")
    if cap is not None:
        delay = min(delay, cap)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay
