"""
Mapping between local records and remote document payloads.

Outgoing payloads never carry temporary ids: a card's deck must already
have a remote id, and structural links to cards that are not yet created
remotely are left out (they are sent again once the remap has run).

Incoming documents are parsed leniently: a broken scheduling config or
scheduling state is replaced by defaults and flagged on the record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from cardsync.errors import DependencyError
from cardsync.remote.base import RemoteRecord
from cardsync.schemas import (
    Card,
    Deck,
    FsrsState,
    LearningPhase,
    LearningState,
    ReviewEntry,
    Sm2State,
    Tag,
    ensure_utc,
    format_step,
    load_scheduling_config,
    load_state_block,
)
from cardsync.sync.id_remap import is_temp_id

logger = logging.getLogger(__name__)


# ---- Compact Review History ----

RATING_CODES = {1: "a", 2: "h", 3: "g", 4: "e"}
CODE_RATINGS = {v: k for k, v in RATING_CODES.items()}
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def compact_history(history: list[ReviewEntry]) -> str:
    """
    Serialize review history as comma-joined `<code><epoch36>.<ms36>` entries.

    Example: "g1a2b3c.5k,a1a2b9x.0"
    """
    seen = set()
    parts = []
    for entry in history:
        code = RATING_CODES.get(entry.rating)
        if code is None:
            continue
        ts = int(ensure_utc(entry.at).timestamp())
        token = f"{code}{_to_base36(max(ts, 0))}.{_to_base36(max(entry.ms or 0, 0))}"
        if token in seen:
            continue
        seen.add(token)
        parts.append(token)
    return ",".join(parts)


def parse_history(compact: Any) -> list[ReviewEntry]:
    """Parse the compact form; malformed and duplicate entries are skipped."""
    if not compact or not isinstance(compact, str):
        return []
    seen = set()
    out = []
    for token in compact.split(","):
        token = token.strip()
        if len(token) < 4 or token in seen:
            continue
        rating = CODE_RATINGS.get(token[0].lower())
        if rating is None:
            continue
        ts_raw, sep, ms_raw = token[1:].partition(".")
        if not sep:
            continue
        try:
            ts = int(ts_raw, 36)
            ms = int(ms_raw, 36)
        except ValueError:
            continue
        if ts <= 0 or ms < 0:
            continue
        seen.add(token)
        out.append(ReviewEntry(rating=rating, at=datetime.fromtimestamp(ts, tz=timezone.utc), ms=ms))
    return out


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


# ---- Decks ----

def deck_to_payload(deck: Deck) -> dict:
    config = deck.srs_config
    srs_config = {
        "learning_steps": [format_step(s) for s in config.learning_steps],
        "relearning_steps": [format_step(s) for s in config.relearning_steps],
        "graduating_interval": config.graduating_interval,
        "easy_interval": config.easy_interval,
        "easy_days": list(config.easy_days),
    }
    if deck.is_memory_model:
        srs_config["memory"] = {
            "weights": list(config.memory.weights),
            "retention": config.memory.retention,
        }
    return {
        "name": deck.name,
        "algorithm": _value(deck.algorithm),
        "srs_config": srs_config,
        "order_mode": _value(deck.order_mode),
        "shuffle_new": deck.shuffle_new,
        "review_limit": deck.review_limit,
        "new_limit": deck.new_limit,
        "reverse": deck.reverse,
        "dynamic_context": deck.dynamic_context,
        "dy_prompt": deck.dy_prompt,
        "hidden": deck.hidden,
        "created_at": deck.created_at.isoformat(),
    }


def deck_from_remote(record: RemoteRecord) -> Deck:
    data = dict(record.data or {})
    config, config_error = load_scheduling_config(data.pop("srs_config", None))
    if config_error:
        logger.warning(f"Deck {record.id} has an invalid scheduling config; defaults applied")

    fields = {
        "id": record.id,
        "remote_id": record.id,
        "srs_config": config,
        "srs_config_error": config_error,
    }
    for key in ("name", "algorithm", "order_mode", "shuffle_new", "review_limit", "new_limit",
                "reverse", "dynamic_context", "dy_prompt", "hidden", "created_at"):
        if data.get(key) is not None:
            fields[key] = data[key]
    if record.updated_at:
        fields["updated_at"] = record.updated_at

    try:
        return Deck.model_validate(fields)
    except ValidationError as e:
        # Keep the deck usable: drop the offending settings, keep identity and name
        logger.warning(f"Deck {record.id} settings invalid ({e.error_count()} error(s)); using defaults")
        return Deck(
            id=record.id,
            remote_id=record.id,
            name=str(data.get("name") or "Untitled"),
            srs_config=config,
            srs_config_error=True,
        )


# ---- Cards ----

def _remote_link(card_id: Optional[str]) -> Optional[str]:
    if not card_id or is_temp_id(card_id):
        return None
    return card_id


def card_to_payload(card: Card, decks: Mapping[str, Deck]) -> dict:
    """
    Build the remote payload for a card.

    Raises:
        DependencyError: If the card's deck has no remote id yet
    """
    deck = decks.get(card.deck_id)
    if deck is None or not deck.remote_id:
        raise DependencyError(f"Deck not yet synced for card {card.id}")

    return {
        "deck_id": deck.remote_id,
        "type": _value(card.type),
        "front": card.front,
        "back": card.back,
        "notes": card.notes,
        "tags": [t.model_dump() for t in card.tags],
        "marked": card.marked,
        "suspended": card.suspended,
        "leech": card.leech,
        "flag": card.flag,
        "retired": card.retired,
        "order": card.order,
        "cloze_index": card.cloze_index,
        "parent_card": _remote_link(card.parent_card),
        "sub_cards": [c for c in (_remote_link(s) for s in card.sub_cards) if c],
        "dy_root_card": _remote_link(card.dy_root_card),
        "dy_prev_card": _remote_link(card.dy_prev_card),
        "dy_next_card": _remote_link(card.dy_next_card),
        "srs_state": {
            "learning": card.learning.model_dump(mode="json"),
            "sm2": card.sm2.model_dump(mode="json"),
            "fsrs": card.fsrs.model_dump(mode="json"),
        },
        "review_history": compact_history(card.review_history),
        "created_at": card.created_at.isoformat(),
    }


def card_from_remote(record: RemoteRecord, decks: Mapping[str, Deck]) -> Optional[Card]:
    """
    Parse a remote card document.

    Returns:
        The card, or None when it has no deck or its deck is unknown locally
    """
    data = record.data or {}
    deck_id = data.get("deck_id")
    if not deck_id or deck_id not in decks:
        return None

    srs_state = data.get("srs_state") or {}
    if not isinstance(srs_state, dict):
        srs_state = {}
    learning, bad_learning = load_state_block(LearningState, srs_state.get("learning"))
    sm2, bad_sm2 = load_state_block(Sm2State, srs_state.get("sm2"))
    fsrs, bad_fsrs = load_state_block(FsrsState, srs_state.get("fsrs"))
    state_error = bad_learning or bad_sm2 or bad_fsrs or not isinstance(data.get("srs_state") or {}, dict)
    if state_error:
        logger.warning(f"Card {record.id} has invalid scheduling state; defaults applied")

    history = parse_history(data.get("review_history"))
    if learning.state == LearningPhase.NEW and (history or sm2.last_review or fsrs.last_review):
        learning.state = LearningPhase.REVIEW
        learning.step = 0
        learning.due = None

    tags = []
    for raw_tag in data.get("tags") or []:
        try:
            tags.append(Tag.model_validate(raw_tag))
        except ValidationError:
            continue

    fields = {
        "id": record.id,
        "remote_id": record.id,
        "deck_id": deck_id,
        "tags": tags,
        "learning": learning,
        "sm2": sm2,
        "fsrs": fsrs,
        "srs_state_error": state_error,
        "review_history": history,
        "sub_cards": [s for s in (data.get("sub_cards") or []) if isinstance(s, str)],
    }
    for key in ("type", "front", "back", "notes", "marked", "suspended", "leech", "flag", "retired",
                "order", "cloze_index", "parent_card", "dy_root_card", "dy_prev_card",
                "dy_next_card", "created_at"):
        if data.get(key) is not None:
            fields[key] = data[key]
    if record.updated_at:
        fields["updated_at"] = record.updated_at

    try:
        card = Card.model_validate(fields)
    except ValidationError as e:
        logger.warning(f"Card {record.id} could not be parsed ({e.error_count()} error(s)); skipped")
        return None
    if card.leech:
        card.suspended = True
    return card
