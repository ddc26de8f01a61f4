"""
Scheduler - main entry point for rating a card

compute_next() is pure: it reads the card and deck, and returns a new
learning state plus both scheduler blocks and the resulting due time.
apply_rating() writes an outcome back onto a card, appends the review to
its history and enforces the leech rule.

Workflow:
1. Decide whether the rating is handled by learning/relearning steps
2. Step phase: advance or graduate (graduation uses the deck's intervals)
3. Review phase: ease-factor update (leveled) or memory-model interval
4. Leech detection (both algorithms)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from cardsync.schemas import (
    Card,
    Deck,
    FsrsState,
    LearningPhase,
    LearningState,
    ReviewEntry,
    Sm2State,
    utc_now,
)
from cardsync.srs import leveled, memory_model
from cardsync.srs.constants import LEECH_THRESHOLD, Rating

logger = logging.getLogger(__name__)


@dataclass
class ScheduleOutcome:
    """Everything a rating changes on a card."""
    learning: LearningState
    sm2: Sm2State
    fsrs: FsrsState
    due: datetime
    graduated: bool = False


def compute_next(
    card: Card,
    rating: Union[Rating, int, str],
    deck: Deck,
    now: Optional[datetime] = None,
) -> ScheduleOutcome:
    """
    Compute the state a card would have after a rating.

    The card is not modified.

    Args:
        card: Card being rated
        rating: again/hard/good/easy (Rating, 1-4 or name)
        deck: The card's deck (algorithm and config)
        now: Review time (defaults to now)

    Returns:
        ScheduleOutcome with new learning state, both blocks and the due time
    """
    rating = Rating.parse(rating)
    now = now or utc_now()
    config = deck.srs_config
    use_memory = deck.is_memory_model

    sm2 = card.sm2.model_copy(deep=True)
    fsrs = card.fsrs.model_copy(deep=True)

    # The memory-model block tracks every rating on memory-model decks,
    # including those inside learning steps.
    if use_memory:
        weights = config.memory.weights
        d, s, r = memory_model.review(weights, fsrs.difficulty, fsrs.stability, fsrs.last_review, rating, now)
        fsrs = FsrsState(
            difficulty=d,
            stability=s,
            retrievability=r,
            due_date=fsrs.due_date,
            last_rating=int(rating),
            last_review=now,
        )

    entry, steps, entered = leveled.step_phase_for(
        card.learning, rating, config.learning_steps, config.relearning_steps
    )

    # ---- Step phase ----
    if entry is not None:
        step = leveled.advance_step(entry, rating, steps, now, entered)
        if not step.graduated:
            if use_memory:
                fsrs.due_date = step.learning.due
            else:
                sm2.due_date = step.learning.due
                sm2.last_rating = int(rating)
                sm2.last_review = now
            return ScheduleOutcome(learning=step.learning, sm2=sm2, fsrs=fsrs, due=step.learning.due)

        interval = config.easy_interval if step.easy else config.graduating_interval
        due = leveled.adjust_for_easy_days(now + timedelta(days=interval), config.easy_days)
        if use_memory:
            fsrs.due_date = due
        else:
            sm2.interval = float(interval)
            sm2.repetitions = max(sm2.repetitions, 1)
            sm2.due_date = due
            sm2.last_rating = int(rating)
            sm2.last_review = now
        return ScheduleOutcome(learning=step.learning, sm2=sm2, fsrs=fsrs, due=due, graduated=True)

    # ---- Review phase ----
    learning = card.learning.model_copy()
    if rating == Rating.AGAIN and learning.state != LearningPhase.NEW:
        learning.lapses += 1
    learning.state = LearningPhase.REVIEW
    learning.step = 0
    learning.due = None

    if use_memory:
        interval = memory_model.next_interval(config.memory.weights, fsrs.stability, config.memory.retention)
        due = now + timedelta(days=interval)
        if rating != Rating.AGAIN:
            due = leveled.adjust_for_easy_days(due, config.easy_days)
        fsrs.due_date = due
        return ScheduleOutcome(learning=learning, sm2=sm2, fsrs=fsrs, due=due)

    sm2 = leveled.sm2_review(sm2, rating, now)
    due = sm2.due_date
    if sm2.interval >= 1:
        due = leveled.adjust_for_easy_days(due, config.easy_days)
        sm2.due_date = due
    return ScheduleOutcome(learning=learning, sm2=sm2, fsrs=fsrs, due=due)


def apply_outcome(card: Card, outcome: ScheduleOutcome) -> Card:
    """Write a computed outcome onto the card and enforce the leech rule."""
    card.learning = outcome.learning
    card.sm2 = outcome.sm2
    card.fsrs = outcome.fsrs
    mark_leech_if_needed(card)
    return card


def apply_rating(
    card: Card,
    rating: Union[Rating, int, str],
    deck: Deck,
    now: Optional[datetime] = None,
    duration_ms: Optional[int] = None,
) -> ScheduleOutcome:
    """
    Rate a card in place.

    Updates the scheduling blocks, appends the review to history,
    bumps updated_at and runs leech detection.

    Returns:
        The outcome that was applied
    """
    rating = Rating.parse(rating)
    now = now or utc_now()
    outcome = compute_next(card, rating, deck, now)
    apply_outcome(card, outcome)
    card.review_history.append(ReviewEntry(rating=int(rating), at=now, ms=duration_ms))
    card.updated_at = now
    return outcome


def mark_leech_if_needed(card: Card) -> bool:
    """Flag and suspend a card once its lapses reach the leech threshold."""
    if card.learning.lapses >= LEECH_THRESHOLD and not card.leech:
        logger.info(f"Card {card.id} reached {card.learning.lapses} lapses, marking as leech")
        card.leech = True
    if card.leech:
        card.suspended = True
    return card.leech


# ---- Due Checks ----

def card_due(card: Card, deck: Optional[Deck]) -> Optional[datetime]:
    """
    The time a card is next due, or None if it has never been scheduled.

    In-progress learning steps take priority; otherwise the active
    algorithm's due date governs, falling back to the other block.
    """
    if card.learning.state in (LearningPhase.LEARNING, LearningPhase.RELEARNING) and card.learning.due:
        return card.learning.due
    if deck is not None and deck.is_memory_model:
        return card.fsrs.due_date or card.sm2.due_date
    return card.sm2.due_date or card.fsrs.due_date


def is_due(card: Card, deck: Optional[Deck], now: Optional[datetime] = None) -> bool:
    due = card_due(card, deck)
    if due is None:
        return True
    return due <= (now or utc_now())
