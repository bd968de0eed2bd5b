"""Common backoff helpers. Durations are in seconds."""

import random


def jitter_up(duration: float, jitter: float) -> float:
    """Randomly scale duration within the fraction jitter, e.g. 10s and 0.1 gives [9s, 11s]."""
    multiplier = jitter * (random.random() * 2 - 1)
    return duration * (1 + multiplier)


def exponent_base2(a: int) -> int:
    """Return 2**(a-1) for a >= 1, and 0 for a == 0."""
    return (1 << a) >> 1