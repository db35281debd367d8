"""Reconnect backoff calculation."""

import random

# Keeps backoff_factor ** attempt finite for any attempt count
MAX_BACKOFF_EXPONENT = 32


def backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before reconnect attempt ``attempt`` (0-based).

    The delay grows by ``backoff_factor`` per attempt, gets ±25% jitter and
    is capped at ``max_delay``. Any attempt number is accepted.
    """
    exponent = min(max(attempt, 0), MAX_BACKOFF_EXPONENT)
    delay = min(initial_delay * (backoff_factor ** exponent), max_delay)

    if jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0.0, min(delay, max_delay))
