"""Retry delay policy for failed settlement attempts."""
from __future__ import annotations

import random

DEFAULT_CAP_SECONDS = 60
DEFAULT_MAX_JITTER_SECONDS = 2


def next_delay_seconds(
    attempts: int,
    *,
    cap_seconds: int = DEFAULT_CAP_SECONDS,
    max_jitter_seconds: int = DEFAULT_MAX_JITTER_SECONDS,
) -> int:
    """Return ``min(2**attempts, cap)`` plus whole-second jitter in ``[0, max_jitter]``.

    Jitter spreads retries of jobs that failed together (e.g. during a provider
    outage) so they do not hit the providers again in lockstep.
    """

    if attempts < 0:
        raise ValueError("attempts must be non-negative")
    base = min(2 ** min(attempts, 32), cap_seconds)
    return base + random.randint(0, max_jitter_seconds)


__all__ = ["next_delay_seconds"]
