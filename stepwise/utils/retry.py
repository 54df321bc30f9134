from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.0) -> float:
    """Compute exponential backoff (``base ** attempt`` seconds) with optional jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter) if jitter else delay
