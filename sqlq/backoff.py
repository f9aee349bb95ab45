"""Retry delay calculation."""

from __future__ import annotations

import random


def exponential_backoff(retry_num: int) -> float:
    """Return the delay in seconds before retry number ``retry_num``.

    The delay is ``2 ** retry_num`` seconds plus a random jitter of
    ``0 .. retry_num - 1`` whole seconds (no jitter for retry 0).
    """
    if retry_num < 0:
        raise ValueError(f"retry number must not be negative, got {retry_num}")
    jitter = random.randrange(retry_num) if retry_num > 0 else 0
    return float(2**retry_num + jitter)