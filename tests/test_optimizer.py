"""
Tests for the memory-model weight optimizer.
"""

import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from cardsync.errors import OptimizationCancelled
from cardsync.schemas import Algorithm, Card, Deck, ReviewEntry
from cardsync.srs.constants import DEFAULT_WEIGHTS
from cardsync.srs.optimizer import (
    CancelToken,
    apply_optimized_weights,
    build_training_set,
    has_enough_history,
    log_loss,
    optimize_weights,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def card_with_history(card_id: str, ratings: list[int], gaps: list[float]) -> Card:
    at = START
    history = []
    for rating, gap in zip(ratings, gaps):
        at = at + timedelta(days=gap)
        history.append(ReviewEntry(rating=rating, at=at))
    return Card(id=card_id, deck_id="d1", review_history=history)


def synthetic_cards(count: int = 12, seed: int = 7) -> list[Card]:
    rng = random.Random(seed)
    cards = []
    for i in range(count):
        ratings = [rng.choice([1, 3, 3, 3, 4]) for _ in range(5)]
        gaps = [0, 1, 3, 7, 15]
        cards.append(card_with_history(f"c{i}", ratings, gaps))
    return cards


class TestTrainingSet:
    def test_only_cards_with_two_reviews(self):
        cards = [
            card_with_history("one", [3], [0]),
            card_with_history("two", [3, 3], [0, 2]),
            Card(id="none", deck_id="d1"),
        ]
        training = build_training_set(cards)
        assert [item.card_id for item in training] == ["two"]

    def test_history_sorted_by_time(self):
        card = card_with_history("c", [3, 1], [5, 1])
        card.review_history.reverse()
        training = build_training_set([card])
        times = [e.at for e in training[0].history]
        assert times == sorted(times)

    def test_sample_capped(self):
        training = build_training_set(synthetic_cards(20), max_cards=5, rng=random.Random(1))
        assert len(training) == 5

    def test_enough_history_thresholds(self):
        assert has_enough_history(build_training_set(synthetic_cards(12)))
        assert not has_enough_history(build_training_set(synthetic_cards(5)))


class TestLogLoss:
    def test_empty_training_set_is_infinite(self):
        assert math.isinf(log_loss([], DEFAULT_WEIGHTS))

    def test_loss_is_positive_and_finite(self):
        loss = log_loss(build_training_set(synthetic_cards()), DEFAULT_WEIGHTS)
        assert math.isfinite(loss)
        assert loss > 0


class TestOptimize:
    async def test_never_worse_than_start(self):
        training = build_training_set(synthetic_cards())
        progress = []
        result = await optimize_weights(
            training, iterations=25, seed=3, on_progress=lambda k, loss: progress.append(k)
        )

        assert result.best_loss <= result.start_loss
        assert len(result.best_weights) == 21
        assert result.training_cards == 12
        assert result.training_events == 60
        assert progress and progress[0] == 1

    async def test_same_seed_is_reproducible(self):
        training = build_training_set(synthetic_cards())
        first = await optimize_weights(training, iterations=10, seed=11)
        second = await optimize_weights(training, iterations=10, seed=11)
        assert first.best_weights == second.best_weights

    async def test_cancel_raises_and_applies_nothing(self):
        deck = Deck(id="d1", algorithm=Algorithm.MEMORY_MODEL)
        before = list(deck.srs_config.memory.weights)
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(OptimizationCancelled):
            await optimize_weights(build_training_set(synthetic_cards()), cancel=cancel)
        assert deck.srs_config.memory.weights == before

    async def test_apply_writes_constrained_weights(self):
        deck = Deck(id="d1", algorithm=Algorithm.MEMORY_MODEL)
        result = await optimize_weights(build_training_set(synthetic_cards()), iterations=5, seed=1)
        apply_optimized_weights(deck, result)
        assert deck.srs_config.memory.weights == pytest.approx(result.best_weights)
