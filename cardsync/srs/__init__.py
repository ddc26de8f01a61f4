"""
Spaced-repetition scheduling.

Two interchangeable algorithms share one entry point:
- leveled: learning/relearning steps plus an ease-factor fallback
- memory-model: continuous difficulty/stability (FSRS v6)

This package namespace only exposes the leaf modules (parameters and the
memory-model math) so the record schemas can validate against them.
The rating API lives in cardsync.srs.scheduler:

    from cardsync.srs.scheduler import compute_next, apply_rating

    outcome = compute_next(card, Rating.GOOD, deck)   # pure
    apply_rating(card, "good", deck)                  # in place
"""

from cardsync.srs.constants import (
    Rating,
    LEECH_THRESHOLD,
    MAX_INTERVAL_DAYS,
    DEFAULT_WEIGHTS,
    DEFAULT_RETENTION,
)
from cardsync.srs.memory_model import (
    constrain_weights,
    clamp_retention,
    forgetting_curve,
    next_interval,
)


__all__ = [
    # Enums and parameters
    "Rating",
    "LEECH_THRESHOLD",
    "MAX_INTERVAL_DAYS",
    "DEFAULT_WEIGHTS",
    "DEFAULT_RETENTION",

    # Memory-model math
    "constrain_weights",
    "clamp_retention",
    "forgetting_curve",
    "next_interval",
]
