"""
Memory Model - difficulty/stability scheduler (FSRS v6)

Pure functions over a 21-value weight vector.

Key concepts:
- Stability (S): days until recall probability falls to 90%
- Difficulty (D): how hard the card is to learn (1-10 scale)
- Retrievability (R): probability of successful recall after t days,
  R = (1 + factor * t / S) ^ decay, with decay = -w20
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional, Sequence

from cardsync.srs.constants import (
    D_MAX,
    D_MIN,
    DEFAULT_RETENTION,
    DEFAULT_WEIGHTS,
    MAX_INTERVAL_DAYS,
    MAX_RETENTION,
    MIN_ELAPSED_DAYS,
    MIN_RETENTION,
    WEIGHT_COUNT,
    Rating,
)


# ---- Parameter Hygiene ----

def constrain_weights(weights: Optional[Sequence[float]]) -> list[float]:
    """
    Normalize a weight vector to exactly 21 finite values within safe bounds.

    Missing or non-finite entries are replaced by the defaults and extra
    entries are dropped.

    Args:
        weights: Candidate weights (any length, may be None)

    Returns:
        A new list of 21 floats
    """
    raw = list(weights or [])
    out: list[float] = []
    for i in range(WEIGHT_COUNT):
        value = raw[i] if i < len(raw) else DEFAULT_WEIGHTS[i]
        try:
            value = float(value)
        except (TypeError, ValueError):
            value = DEFAULT_WEIGHTS[i]
        if not math.isfinite(value):
            value = DEFAULT_WEIGHTS[i]
        out.append(value)

    for i in range(4):
        out[i] = max(0.01, out[i])
    out[4] = min(max(out[4], 1.0), 10.0)
    out[7] = min(max(out[7], 0.0), 1.0)
    out[20] = min(max(out[20], 0.1), 0.8)
    return out


def clamp_retention(retention: Optional[float]) -> float:
    """Clamp desired retention to [0.01, 0.99]; unusable input becomes the default."""
    try:
        value = float(retention)
    except (TypeError, ValueError):
        return DEFAULT_RETENTION
    if not math.isfinite(value):
        return DEFAULT_RETENTION
    return min(max(value, MIN_RETENTION), MAX_RETENTION)


def constrain_difficulty(d: float) -> float:
    return min(max(round(d, 2), D_MIN), D_MAX)


def clamp2(value: float) -> float:
    """Round to two decimals, never negative, 0 for non-finite input."""
    if not math.isfinite(value):
        return 0.0
    return max(0.0, round(value, 2))


# ---- Forgetting Curve ----

def decay(w: Sequence[float]) -> float:
    return -w[20]


def curve_factor(w: Sequence[float]) -> float:
    return 0.9 ** (1 / decay(w)) - 1


def forgetting_curve(w: Sequence[float], elapsed: float, stability: float) -> float:
    """
    Probability of recall after `elapsed` days for a memory of the given stability.

    Args:
        w: Weight vector
        elapsed: Days since the last review
        stability: Current stability in days

    Returns:
        Retrievability between 0 and 1
    """
    if elapsed <= 0:
        return 1.0
    if stability <= 0:
        return 0.0
    return (1 + curve_factor(w) * elapsed / stability) ** decay(w)


def next_interval(w: Sequence[float], stability: float, retention: float = DEFAULT_RETENTION) -> int:
    """
    Invert the forgetting curve: days until recall falls to the target retention.

    Floored at one day and capped at MAX_INTERVAL_DAYS.
    """
    rr = clamp_retention(retention)
    days = stability / curve_factor(w) * (rr ** (1 / decay(w)) - 1)
    if not math.isfinite(days):
        return MAX_INTERVAL_DAYS
    return int(min(max(round(days), 1), MAX_INTERVAL_DAYS))


def elapsed_days(last_review: Optional[datetime], now: datetime) -> float:
    if last_review is None:
        return 0.0
    return max(MIN_ELAPSED_DAYS, (now - last_review).total_seconds() / 86400.0)


# ---- Initial State ----

def init_difficulty(w: Sequence[float], rating: Rating) -> float:
    # D0 = w4 - (G - 3) * w5
    return constrain_difficulty(w[4] - (int(rating) - 3) * w[5])


def init_stability(w: Sequence[float], rating: Rating) -> float:
    # S0 = w[G - 1]
    return round(max(w[int(rating) - 1], 0.1), 2)


# ---- Updates ----

def next_difficulty(w: Sequence[float], difficulty: float, rating: Rating) -> float:
    """D' = w7 * w4 + (1 - w7) * (D - w6 * (G - 3))"""
    moved = difficulty - w[6] * (int(rating) - 3)
    return constrain_difficulty(w[7] * w[4] + (1 - w[7]) * moved)


def recall_stability(
    w: Sequence[float],
    difficulty: float,
    stability: float,
    retrievability: float,
    rating: Rating,
) -> float:
    hard_penalty = w[15] if rating == Rating.HARD else 1.0
    easy_bonus = w[16] if rating == Rating.EASY else 1.0
    value = stability * (
        1
        + math.exp(w[8])
        * (11 - difficulty)
        * stability ** (-w[9])
        * (math.exp((1 - retrievability) * w[10]) - 1)
        * hard_penalty
        * easy_bonus
    )
    return min(clamp2(value), float(MAX_INTERVAL_DAYS))


def forget_stability(
    w: Sequence[float],
    difficulty: float,
    stability: float,
    retrievability: float,
) -> float:
    # Stability never increases on failure
    value = min(
        w[11]
        * difficulty ** (-w[12])
        * ((stability + 1) ** w[13] - 1)
        * math.exp((1 - retrievability) * w[14]),
        stability,
    )
    return clamp2(value)


def short_term_stability(w: Sequence[float], stability: float, rating: Rating) -> float:
    value = stability * math.exp(w[17] * (int(rating) - 3 + w[18])) * stability ** (-w[19])
    return min(clamp2(value), float(MAX_INTERVAL_DAYS))


def review(
    w: Sequence[float],
    difficulty: Optional[float],
    stability: Optional[float],
    last_review: Optional[datetime],
    rating: Rating,
    now: datetime,
) -> tuple[float, float, float]:
    """
    Apply one rating to a memory state.

    Args:
        w: Constrained weight vector
        difficulty: Current difficulty, or None if never reviewed
        stability: Current stability, or None if never reviewed
        last_review: Time of the previous review, None for a first review
        rating: The rating given now
        now: Review time

    Returns:
        (difficulty, stability, retrievability at review time)
    """
    if last_review is None:
        return init_difficulty(w, rating), init_stability(w, rating), 1.0

    last_d = difficulty if difficulty is not None else init_difficulty(w, Rating.GOOD)
    last_s = stability if stability is not None else init_stability(w, Rating.GOOD)

    t = elapsed_days(last_review, now)
    r = forgetting_curve(w, t, last_s)
    new_d = next_difficulty(w, last_d, rating)

    if rating == Rating.AGAIN:
        new_s = forget_stability(w, last_d, last_s, r)
    elif t < 1:
        new_s = short_term_stability(w, last_s, rating)
    else:
        new_s = recall_stability(w, last_d, last_s, r, rating)

    return new_d, new_s, max(0.0, min(1.0, round(r, 4)))


def predict_recall(
    w: Sequence[float],
    stability: Optional[float],
    last_review: Optional[datetime],
    now: datetime,
) -> Optional[float]:
    """Current retrievability readback, or None for an unseen card."""
    if stability is None or last_review is None:
        return None
    return forgetting_curve(w, elapsed_days(last_review, now), stability)
