"""
Exponential backoff with jitter for authority retries and store outages.
delay = min(cap, base * 2^attempt), then jittered uniformly into [delay/2, delay].
"""

import random
from datetime import datetime, timedelta

from django.utils import timezone


def backoff_delay_ms(
    attempt: int,
    base_ms: int,
    cap_ms: int,
    rng: random.Random | None = None,
    retry_after_s: float | None = None,
) -> int:
    """
    Delay in milliseconds before the next try.

    attempt is the number of attempts already made (>= 0). A Retry-After hint from
    the authority raises the delay but never beyond cap_ms.
    """
    rng = rng or random
    exponent = min(max(attempt, 0), 32)
    delay = min(cap_ms, base_ms * (2 ** exponent))
    jittered = rng.uniform(delay / 2, delay)
    if retry_after_s is not None and retry_after_s > 0:
        jittered = max(jittered, min(cap_ms, retry_after_s * 1000))
    return int(jittered)


def next_attempt_at(
    attempt: int,
    base_ms: int,
    cap_ms: int,
    rng: random.Random | None = None,
    retry_after_s: float | None = None,
    now: datetime | None = None,
) -> datetime:
    """Absolute time at which the invoice becomes actionable again."""
    delay = backoff_delay_ms(attempt, base_ms, cap_ms, rng=rng, retry_after_s=retry_after_s)
    return (now or timezone.now()) + timedelta(milliseconds=delay)
