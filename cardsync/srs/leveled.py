"""
Leveled Scheduler - learning steps and the ease-factor fallback

Pure functions. Step mechanics are shared by both algorithms; the
ease-factor (SM-2 family) update is used once a leveled card is out of
its learning/relearning steps, or always when a deck has no steps.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from cardsync.schemas import LearningPhase, LearningState, Sm2State
from cardsync.srs.constants import (
    EASY_BONUS,
    EASY_DAY_MAX_ITERATIONS,
    MIN_EASE,
    SECOND_INTERVAL_DAYS,
    SM2_QUALITY,
    Rating,
)


# ---- Ease-factor Update ----

def sm2_review(sm2: Sm2State, rating: Rating, now: datetime) -> Sm2State:
    """
    Classic ease-factor update.

    The ease factor moves on every review (failures included) and is
    floored at 1.3. Failed recall (again/hard) resets repetitions; hard
    still gets one day, again is due immediately.

    Args:
        sm2: Current state (not modified)
        rating: Rating given
        now: Review time

    Returns:
        New Sm2State with due_date set
    """
    grade = SM2_QUALITY[rating]
    ease = max(MIN_EASE, sm2.ease_factor + (0.1 - (5 - grade) * (0.08 + (5 - grade) * 0.02)))

    if grade < 3:
        repetitions = 0
        interval = 1.0 if rating == Rating.HARD else 0.0
    else:
        repetitions = sm2.repetitions + 1
        if repetitions == 1:
            interval = 1.0
        elif repetitions == 2:
            interval = float(SECOND_INTERVAL_DAYS)
        else:
            multiplier = EASY_BONUS if rating == Rating.EASY else 1.0
            interval = float(round(max(sm2.interval, 1.0) * ease * multiplier))

    return Sm2State(
        ease_factor=round(ease, 4),
        interval=interval,
        repetitions=repetitions,
        due_date=now + timedelta(days=interval),
        last_rating=int(rating),
        last_review=now,
    )


# ---- Easy Days ----

def adjust_for_easy_days(due: datetime, easy_days: Sequence[int]) -> datetime:
    """
    Walk a review due date forward past configured easy days.

    Bounded to EASY_DAY_MAX_ITERATIONS so a bad config can never loop.
    """
    if not easy_days:
        return due
    skip = set(easy_days)
    for _ in range(EASY_DAY_MAX_ITERATIONS):
        if due.weekday() not in skip:
            break
        due = due + timedelta(days=1)
    return due


# ---- Learning Steps ----

@dataclass
class StepResult:
    """Outcome of one rating inside the learning/relearning phase."""
    learning: LearningState
    graduated: bool = False
    easy: bool = False


def step_phase_for(learning: LearningState, rating: Rating, learning_steps: Sequence[float],
                   relearning_steps: Sequence[float]) -> tuple[Optional[LearningState], list[float], bool]:
    """
    Decide whether this rating is handled by step mechanics.

    Returns:
        (entry_state, steps, entered) where entry_state is None when the
        rating falls through to the per-algorithm review update.
    """
    state = learning.state
    if state == LearningPhase.NEW:
        if learning_steps:
            return (
                LearningState(state=LearningPhase.LEARNING, step=0, lapses=learning.lapses),
                list(learning_steps),
                True,
            )
        return None, [], False
    if state == LearningPhase.REVIEW:
        if rating == Rating.AGAIN and relearning_steps:
            return (
                LearningState(state=LearningPhase.RELEARNING, step=0, lapses=learning.lapses + 1),
                list(relearning_steps),
                True,
            )
        return None, [], False
    if state == LearningPhase.LEARNING:
        return learning.model_copy(), list(learning_steps), False
    return learning.model_copy(), list(relearning_steps), False


def advance_step(learning: LearningState, rating: Rating, steps: Sequence[float],
                 now: datetime, entered: bool) -> StepResult:
    """
    Apply the step rule to a card in learning or relearning.

    again → step 0 (and a lapse, unless the card only just entered the phase);
    hard → hold; good → next step; easy → graduate. Reaching the end of the
    step list graduates, except on the rating that entered the phase, which
    stays on the last step.

    Args:
        learning: State already placed in the learning/relearning phase
        rating: Rating given
        steps: Step durations in minutes
        now: Review time
        entered: True when this same rating moved the card into the phase

    Returns:
        StepResult with the new learning state
    """
    result = learning.model_copy()

    if not steps or rating == Rating.EASY:
        return StepResult(learning=_graduated(result), graduated=True, easy=rating == Rating.EASY)

    step = min(result.step, len(steps) - 1)
    if rating == Rating.AGAIN:
        step = 0
        if not entered:
            result.lapses += 1
    elif rating == Rating.GOOD:
        step += 1

    # The rating that starts the phase never graduates (easy aside)
    if entered:
        step = min(step, len(steps) - 1)

    if step >= len(steps):
        return StepResult(learning=_graduated(result), graduated=True)

    result.step = step
    result.due = now + timedelta(minutes=steps[step])
    return StepResult(learning=result)


def _graduated(learning: LearningState) -> LearningState:
    learning.state = LearningPhase.REVIEW
    learning.step = 0
    learning.due = None
    return learning
