"""
Weight Optimizer - fit memory-model weights to review history

Simultaneous-perturbation stochastic approximation (SPSA) over the 21
weights, minimizing log-loss between predicted recall and what actually
happened (again = forgotten, anything else = recalled).

The search runs on the event loop, yielding every few iterations, and
checks a cooperative cancel token on every iteration. Results are never
applied automatically; call apply_optimized_weights() to persist them.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from cardsync.schemas import Card, Deck, ReviewEntry, utc_now
from cardsync.srs import memory_model
from cardsync.srs.constants import WEIGHT_COUNT, Rating
from cardsync.errors import OptimizationCancelled

logger = logging.getLogger(__name__)


# ---- Search Parameters ----

ALPHA = 0.602       # Step-size decay exponent
GAMMA = 0.101       # Perturbation decay exponent
A0 = 0.12           # Initial step size
C0 = 0.06           # Initial perturbation size
ITERATIONS = 220
CONVERGENCE_THRESHOLD = 1e-4
STAGNANT_ITERS_TO_CONVERGE = 15
YIELD_EVERY = 10
LOG_LOSS_EPS = 1e-6

MIN_TRAINING_CARDS = 10
MIN_TRAINING_EVENTS = 50
MAX_TRAINING_CARDS = 400


class CancelToken:
    """Cooperative cancellation flag shared with the caller."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class OptimizationResult:
    best_weights: list[float]
    best_loss: float
    start_loss: float
    iterations: int
    converged: bool = False
    training_cards: int = 0
    training_events: int = 0


@dataclass
class TrainingItem:
    card_id: str
    history: list[ReviewEntry] = field(default_factory=list)


# ---- Training Set ----

def build_training_set(
    cards: Sequence[Card],
    max_cards: int = MAX_TRAINING_CARDS,
    rng: Optional[random.Random] = None,
) -> list[TrainingItem]:
    """
    Collect cards with at least two reviews, history sorted by time.

    When more than max_cards qualify, a random sample is taken.
    """
    candidates = [c for c in cards if len(c.review_history) >= 2]
    if len(candidates) > max_cards:
        candidates = (rng or random.Random()).sample(candidates, max_cards)
    items = []
    for card in candidates:
        history = sorted(card.review_history, key=lambda e: e.at)
        if len(history) >= 2:
            items.append(TrainingItem(card_id=card.id, history=history))
    return items


def log_loss(training_set: Sequence[TrainingItem], weights: Sequence[float]) -> float:
    """
    Mean log-loss of predicted recall over every non-first review.

    Returns:
        Average loss, or +inf when nothing could be scored
    """
    w = memory_model.constrain_weights(weights)
    total = 0.0
    n = 0
    for item in training_set:
        difficulty: Optional[float] = None
        stability: Optional[float] = None
        last_review: Optional[datetime] = None
        for entry in item.history:
            rating = Rating(entry.rating)
            if last_review is not None:
                t = memory_model.elapsed_days(last_review, entry.at)
                p = memory_model.forgetting_curve(w, t, stability)
                p = min(1 - LOG_LOSS_EPS, max(LOG_LOSS_EPS, p))
                y = 0.0 if rating == Rating.AGAIN else 1.0
                total += -(y * math.log(p) + (1 - y) * math.log(1 - p))
                n += 1
            difficulty, stability, _ = memory_model.review(w, difficulty, stability, last_review, rating, entry.at)
            last_review = entry.at
    if n == 0:
        return math.inf
    return total / n


# ---- Search ----

async def optimize_weights(
    training_set: Sequence[TrainingItem],
    start_weights: Optional[Sequence[float]] = None,
    cancel: Optional[CancelToken] = None,
    iterations: int = ITERATIONS,
    seed: Optional[int] = None,
    on_progress: Optional[Callable[[int, float], None]] = None,
) -> OptimizationResult:
    """
    Run the SPSA search.

    Args:
        training_set: Output of build_training_set()
        start_weights: Starting point (defaults to the built-in weights)
        cancel: Token checked every iteration
        iterations: Maximum iterations
        seed: Seed for the perturbation RNG (reproducible runs)
        on_progress: Called with (iteration, best_loss) every YIELD_EVERY iterations

    Returns:
        OptimizationResult with the best weights found

    Raises:
        OptimizationCancelled: If the token fires; nothing is applied
    """
    rng = random.Random(seed)
    w = memory_model.constrain_weights(start_weights)
    best_w = list(w)
    best_loss = log_loss(training_set, best_w)
    start_loss = best_loss
    prev_best = best_loss
    stagnant = 0
    converged = False
    k = 0

    for k in range(iterations):
        if cancel is not None and cancel.cancelled:
            logger.info(f"Optimization cancelled at iteration {k}")
            raise OptimizationCancelled("Optimization cancelled")

        ak = A0 / (k + 1) ** ALPHA
        ck = C0 / (k + 1) ** GAMMA
        delta = [-1.0 if rng.random() < 0.5 else 1.0 for _ in range(WEIGHT_COUNT)]
        scale = [abs(v) + 1 for v in w]
        w_plus = [v + ck * delta[i] * scale[i] for i, v in enumerate(w)]
        w_minus = [v - ck * delta[i] * scale[i] for i, v in enumerate(w)]

        loss_plus = log_loss(training_set, w_plus)
        loss_minus = log_loss(training_set, w_minus)
        if not math.isfinite(loss_plus) or not math.isfinite(loss_minus):
            # Wandered into invalid space: restart from the best point
            w = list(best_w)
            continue

        gradient = [(loss_plus - loss_minus) / (2 * ck * delta[i] * scale[i]) for i in range(WEIGHT_COUNT)]
        w = memory_model.constrain_weights([v - ak * gradient[i] for i, v in enumerate(w)])
        current = log_loss(training_set, w)
        if current < best_loss:
            best_loss = current
            best_w = list(w)

        if abs(best_loss - prev_best) < CONVERGENCE_THRESHOLD:
            stagnant += 1
            if stagnant >= STAGNANT_ITERS_TO_CONVERGE:
                converged = True
                break
        else:
            stagnant = 0
            prev_best = best_loss

        if k % YIELD_EVERY == 0:
            if on_progress is not None:
                on_progress(k + 1, best_loss)
            await asyncio.sleep(0)

    logger.info(f"Optimization finished: loss {start_loss:.4f} -> {best_loss:.4f} after {k + 1} iterations")
    return OptimizationResult(
        best_weights=[round(v, 4) for v in best_w],
        best_loss=best_loss,
        start_loss=start_loss,
        iterations=k + 1,
        converged=converged,
        training_cards=len(training_set),
        training_events=sum(len(item.history) for item in training_set),
    )


def has_enough_history(training_set: Sequence[TrainingItem]) -> bool:
    events = sum(len(item.history) for item in training_set)
    return len(training_set) >= MIN_TRAINING_CARDS and events >= MIN_TRAINING_EVENTS


def apply_optimized_weights(deck: Deck, result: OptimizationResult) -> Deck:
    """Copy optimized weights onto the deck config (caller persists and enqueues)."""
    deck.srs_config.memory.weights = memory_model.constrain_weights(result.best_weights)
    deck.updated_at = utc_now()
    return deck
