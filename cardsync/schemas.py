"""
Pydantic models for decks, cards, queued mutations and study sessions.

These models are the in-memory shape of everything the local store persists.
Both scheduler blocks (sm2 and fsrs) are always present on a card; the deck's
algorithm decides which one governs the due date.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from cardsync.srs.constants import (
    DEFAULT_EASE,
    DEFAULT_EASY_INTERVAL,
    DEFAULT_GRADUATING_INTERVAL,
    DEFAULT_LEARNING_STEPS,
    DEFAULT_RELEARNING_STEPS,
    DEFAULT_RETENTION,
    DEFAULT_WEIGHTS,
)
from cardsync.srs.memory_model import clamp_retention, constrain_weights

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---- Enums ----

class Algorithm(str, Enum):
    """Scheduler that owns a deck's due-date math."""
    LEVELED = "leveled"
    MEMORY_MODEL = "memory-model"


class OrderMode(str, Enum):
    """How cards inside one deck are ordered in a session."""
    NONE = "none"          # shuffle
    CREATED = "created"    # creation time
    PROPERTY = "property"  # explicit order value, ties by creation time


class CardType(str, Enum):
    FRONT_BACK = "front-back"
    CLOZE = "cloze"


class LearningPhase(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


class MutationType(str, Enum):
    """Queued operation kinds. Only the first five are pushed to the remote."""
    DECK_UPSERT = "deck-upsert"
    DECK_DELETE = "deck-delete"
    CARD_UPSERT = "card-upsert"
    CARD_DELETE = "card-delete"
    BLOCK_APPEND = "block-append"
    DERIVED_GENERATION_JOB = "derived-generation-job"


# ---- Scheduling Config ----

_STEP_UNITS = {"s": 1 / 60, "m": 1.0, "h": 60.0, "d": 1440.0}


def parse_step(value: Any) -> float:
    """
    Parse a step duration into minutes.

    Accepts numbers (minutes) or strings like "30s", "10m", "1h", "2d".

    Raises:
        ValueError: If the value is not a positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid step: {value!r}")
    if isinstance(value, (int, float)):
        minutes = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ValueError("Empty step")
        unit = text[-1]
        if unit in _STEP_UNITS:
            minutes = float(text[:-1]) * _STEP_UNITS[unit]
        else:
            minutes = float(text)
    else:
        raise ValueError(f"Invalid step: {value!r}")
    if minutes <= 0:
        raise ValueError(f"Step must be positive: {value!r}")
    return minutes


def format_step(minutes: float) -> str:
    """Inverse of parse_step for display and remote payloads."""
    if minutes >= 1440 and minutes % 1440 == 0:
        return f"{int(minutes // 1440)}d"
    if minutes >= 60 and minutes % 60 == 0:
        return f"{int(minutes // 60)}h"
    if minutes == int(minutes):
        return f"{int(minutes)}m"
    return f"{round(minutes * 60)}s"


class MemoryModelConfig(BaseModel):
    """Weight vector and target retention for the memory-model scheduler."""
    weights: list[float] = Field(default_factory=lambda: list(DEFAULT_WEIGHTS))
    retention: float = DEFAULT_RETENTION

    @field_validator("weights", mode="before")
    @classmethod
    def _constrain_weights(cls, value):
        return constrain_weights(value)

    @field_validator("retention", mode="before")
    @classmethod
    def _clamp_retention(cls, value):
        return clamp_retention(value)


class SchedulingConfig(BaseModel):
    """Per-deck scheduling configuration. Step durations are stored in minutes."""
    learning_steps: list[float] = Field(default_factory=lambda: list(DEFAULT_LEARNING_STEPS))
    relearning_steps: list[float] = Field(default_factory=lambda: list(DEFAULT_RELEARNING_STEPS))
    graduating_interval: int = Field(default=DEFAULT_GRADUATING_INTERVAL, ge=1)
    easy_interval: int = Field(default=DEFAULT_EASY_INTERVAL, ge=1)
    easy_days: list[int] = Field(default_factory=list, description="Weekdays to avoid (Monday=0)")
    memory: MemoryModelConfig = Field(default_factory=MemoryModelConfig)

    @field_validator("learning_steps", "relearning_steps", mode="before")
    @classmethod
    def _parse_steps(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [part for part in value.replace(",", " ").split() if part]
        return [parse_step(v) for v in value]

    @field_validator("easy_days")
    @classmethod
    def _check_easy_days(cls, value):
        for day in value:
            if day < 0 or day > 6:
                raise ValueError(f"Weekday out of range: {day}")
        # Every day skipped would make every due date invalid
        if len(set(value)) >= 7:
            raise ValueError("Cannot skip every day of the week")
        return sorted(set(value))


def load_scheduling_config(raw: Any) -> tuple[SchedulingConfig, bool]:
    """
    Validate a scheduling config from persisted or remote data.

    Invalid input never fails: defaults are substituted and the error flag
    is returned so the caller can surface a notice.

    Returns:
        (config, had_error)
    """
    if raw is None:
        return SchedulingConfig(), False
    if isinstance(raw, SchedulingConfig):
        return raw, False
    try:
        return SchedulingConfig.model_validate(raw), False
    except ValidationError as e:
        logger.warning(f"Invalid scheduling config, using defaults: {e.error_count()} error(s)")
        return SchedulingConfig(), True


# ---- Card Sub-state ----

class Tag(BaseModel):
    name: str
    color: str = "default"


class ReviewEntry(BaseModel):
    """One rating in a card's append-only review history."""
    rating: int = Field(..., ge=1, le=4)
    at: datetime
    ms: Optional[int] = None  # time spent answering


class LearningState(BaseModel):
    """Shared learning-state, orthogonal to which algorithm owns the due date."""
    state: LearningPhase = LearningPhase.NEW
    step: int = Field(default=0, ge=0)
    due: Optional[datetime] = None  # only while learning/relearning
    lapses: int = Field(default=0, ge=0)

    class Config:
        use_enum_values = True


class Sm2State(BaseModel):
    """Leveled algorithm state."""
    ease_factor: float = DEFAULT_EASE
    interval: float = 0.0  # days
    repetitions: int = 0
    due_date: Optional[datetime] = None
    last_rating: Optional[int] = None
    last_review: Optional[datetime] = None


class FsrsState(BaseModel):
    """Memory-model state. None values mean the card has never been reviewed."""
    difficulty: Optional[float] = None
    stability: Optional[float] = None
    retrievability: Optional[float] = None
    due_date: Optional[datetime] = None
    last_rating: Optional[int] = None
    last_review: Optional[datetime] = None


def load_state_block(model, raw: Any) -> tuple[Any, bool]:
    """
    Validate one scheduling-state block (LearningState, Sm2State, FsrsState).

    Returns:
        (block, had_error) - a default block when raw is invalid
    """
    if raw is None:
        return model(), False
    if isinstance(raw, model):
        return raw, False
    try:
        return model.model_validate(raw), False
    except ValidationError:
        return model(), True


# ---- Main Records ----

class Deck(BaseModel):
    """
    A deck of cards with its own scheduler and session settings.

    `id` is a temporary local id until the deck is created remotely, after
    which it is rewritten to the remote id (and remote_id is set).
    """
    id: str
    remote_id: Optional[str] = None
    name: str = "Untitled"
    algorithm: Algorithm = Algorithm.LEVELED
    srs_config: SchedulingConfig = Field(default_factory=SchedulingConfig)
    srs_config_error: bool = False

    # Session building
    order_mode: OrderMode = OrderMode.NONE
    shuffle_new: bool = True
    review_limit: int = Field(default=50, ge=0)
    new_limit: int = Field(default=20, ge=0)
    reverse: bool = False

    # Dynamic-context chains
    dynamic_context: bool = False
    dy_prompt: str = ""

    hidden: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True

    @property
    def is_memory_model(self) -> bool:
        return self.algorithm == Algorithm.MEMORY_MODEL


class Card(BaseModel):
    """
    A flashcard.

    Cloze parents hold the blank markers; each blank gets a sub-card
    (parent_card set, cloze_index = blank number) that is studied on its own.
    """
    id: str
    remote_id: Optional[str] = None
    deck_id: str
    type: CardType = CardType.FRONT_BACK
    front: str = ""
    back: str = ""
    notes: str = ""
    tags: list[Tag] = Field(default_factory=list)

    # Flags
    marked: bool = False
    suspended: bool = False
    leech: bool = False
    flag: Optional[str] = None  # color flag
    retired: bool = False       # derived card replaced or orphaned
    order: Optional[float] = None

    # Scheduling
    sm2: Sm2State = Field(default_factory=Sm2State)
    fsrs: FsrsState = Field(default_factory=FsrsState)
    learning: LearningState = Field(default_factory=LearningState)
    srs_state_error: bool = False

    # Structure (id-based edges)
    parent_card: Optional[str] = None
    sub_cards: list[str] = Field(default_factory=list)
    cloze_index: Optional[int] = None
    dy_root_card: Optional[str] = None
    dy_prev_card: Optional[str] = None
    dy_next_card: Optional[str] = None

    review_history: list[ReviewEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_reconciled_at: Optional[datetime] = None

    class Config:
        use_enum_values = True

    @property
    def is_cloze_parent(self) -> bool:
        return self.type == CardType.CLOZE and self.parent_card is None

    @property
    def is_sub_card(self) -> bool:
        return self.parent_card is not None

    @property
    def is_new(self) -> bool:
        return (
            self.learning.state == LearningPhase.NEW
            and not self.review_history
            and self.sm2.last_review is None
            and self.fsrs.last_review is None
        )


class Mutation(BaseModel):
    """A queued operation waiting to be pushed (or run locally, for derived jobs)."""
    id: Optional[int] = None
    type: MutationType
    entity_id: str
    payload: dict = Field(default_factory=dict)
    retry_count: int = 0
    reason: Optional[str] = None
    parked: bool = False  # failed permanently; waits for an explicit re-arm
    last_error: Optional[str] = None
    queued_at: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True


# ---- Study Session ----

class QueueItem(BaseModel):
    card_id: str
    reversed: bool = False


class StudySession(BaseModel):
    id: str
    started_at: datetime = Field(default_factory=utc_now)
    deck_ids: list[str] = Field(default_factory=list)
    card_queue: list[QueueItem] = Field(default_factory=list)
    current_index: int = 0
    completed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    rating_counts: dict[str, int] = Field(
        default_factory=lambda: {"again": 0, "hard": 0, "good": 0, "easy": 0}
    )
    preview: bool = False          # scheduling must not be mutated
    studying_non_due: bool = False

    @property
    def finished(self) -> bool:
        return self.current_index >= len(self.card_queue)


class Selection(BaseModel):
    """Persisted selection state (which decks are studied, what is open)."""
    study_deck_ids: list[str] = Field(default_factory=list)
    selected_deck_id: Optional[str] = None
    selected_card_id: Optional[str] = None
