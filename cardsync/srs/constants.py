"""
Scheduling Constants and Parameters

All fixed parameters for the leveled and memory-model schedulers in one
place. Per-deck values (steps, intervals, weights, retention) live on the
deck's scheduling config; the values here are defaults and hard limits.
"""

from enum import IntEnum
from typing import Union


# ---- Ratings ----

class Rating(IntEnum):
    """User feedback on a review."""
    AGAIN = 1   # Forgot
    HARD = 2    # Recalled with serious effort
    GOOD = 3    # Recalled normally
    EASY = 4    # Recalled without effort

    @classmethod
    def parse(cls, value: Union["Rating", int, str]) -> "Rating":
        """Accept a Rating, its integer value or its lowercase name."""
        if isinstance(value, str) and not value.isdigit():
            return cls[value.strip().upper()]
        return cls(int(value))


# ---- Card Lifecycle ----

LEECH_THRESHOLD = 8           # Lapses before a card is flagged leech and suspended
EASY_DAY_MAX_ITERATIONS = 14  # Bound on the easy-day walk


# ---- Leveled (ease factor) Parameters ----

DEFAULT_EASE = 2.5
MIN_EASE = 1.3
EASY_BONUS = 1.3
SECOND_INTERVAL_DAYS = 6

# Rating → SM-2 quality grade (0-5)
SM2_QUALITY = {
    Rating.AGAIN: 0,
    Rating.HARD: 2,
    Rating.GOOD: 4,
    Rating.EASY: 5,
}

DEFAULT_LEARNING_STEPS = [1.0, 10.0]   # minutes
DEFAULT_RELEARNING_STEPS = [10.0]      # minutes
DEFAULT_GRADUATING_INTERVAL = 1        # days
DEFAULT_EASY_INTERVAL = 4              # days


# ---- Memory-Model Parameters ----

DEFAULT_WEIGHTS = [
    0.212, 1.2931, 2.3065, 8.2956, 6.4133, 0.8334, 3.0194, 0.001,
    1.8722, 0.1666, 0.796, 1.4835, 0.0614, 0.2629, 1.6483, 0.6014,
    1.8729, 0.5425, 0.0912, 0.0658, 0.1542,
]
WEIGHT_COUNT = 21

DEFAULT_RETENTION = 0.9
MIN_RETENTION = 0.01
MAX_RETENTION = 0.99

D_MIN = 1.0          # Minimum difficulty
D_MAX = 10.0         # Maximum difficulty

MIN_ELAPSED_DAYS = 0.01
MAX_INTERVAL_DAYS = 3650
