"""
Session Builder - picks, orders and interleaves cards for a study session.

Queue Logic:
1. Eligible cards per deck: not suspended, leech or retired; not a cloze
   parent (its sub-cards are studied instead); passes optional filters;
   due unless include_non_due
2. Per deck ordering: shuffle, creation time, or explicit order value
   (missing values last, ties by creation time); new cards are shuffled
   when shuffle_new is on, unless the deck orders by property
3. Per deck caps: review_limit for reviews and new_limit for new cards
   (include_non_due caps everything by review_limit)
4. Decks are interleaved by a weighted random draw proportional to the
   cards each has left, which keeps every deck's internal order; reviews
   come before new cards
5. Reverse-prompt decisions are drawn once here so a resumed session shows
   the same side; cloze cards are never reversed
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from cardsync.schemas import Card, CardType, Deck, OrderMode, QueueItem, utc_now
from cardsync.srs.constants import Rating
from cardsync.srs.scheduler import is_due
from cardsync.storage.local_store import LocalStore

REVERSE_PROBABILITY = 0.5


@dataclass
class QueueFilters:
    """Optional narrowing applied on top of the standard eligibility rules."""
    tags: list[str] = field(default_factory=list)   # any tag matches
    card_types: list[str] = field(default_factory=list)
    again_only: bool = False       # last rating was again
    struggling_only: bool = False  # last rating was again or hard
    added_today: bool = False


def _last_rating(card: Card) -> Optional[int]:
    if card.review_history:
        return card.review_history[-1].rating
    return card.sm2.last_rating or card.fsrs.last_rating


def is_eligible(card: Card, filters: Optional[QueueFilters] = None, now: Optional[datetime] = None) -> bool:
    """Standard eligibility plus any optional filters."""
    if card.suspended or card.leech or card.retired or card.is_cloze_parent:
        return False
    if filters is None:
        return True
    if filters.tags and not any(tag.name in filters.tags for tag in card.tags):
        return False
    if filters.card_types and card.type not in filters.card_types:
        return False
    rating = _last_rating(card)
    if filters.again_only and rating != Rating.AGAIN:
        return False
    if filters.struggling_only and rating not in (Rating.AGAIN, Rating.HARD):
        return False
    if filters.added_today and card.created_at.date() != (now or utc_now()).date():
        return False
    return True


def order_cards(cards: list[Card], deck: Optional[Deck], rng: random.Random, new_cards: bool = False) -> list[Card]:
    """Order one deck's cards according to its order mode."""
    mode = deck.order_mode if deck is not None else OrderMode.NONE
    shuffle_new = deck.shuffle_new if deck is not None else True
    cards = list(cards)

    if new_cards and shuffle_new and mode != OrderMode.PROPERTY:
        rng.shuffle(cards)
    elif mode == OrderMode.CREATED:
        cards.sort(key=lambda c: (c.created_at, c.id))
    elif mode == OrderMode.PROPERTY:
        cards.sort(key=lambda c: (c.order is None, c.order or 0, c.created_at, c.id))
    else:
        rng.shuffle(cards)
    return cards


def interleave(buckets: dict[str, list[Card]], rng: random.Random) -> list[Card]:
    """
    Merge per-deck sequences, keeping each deck's order.

    Each step draws a deck with probability proportional to its remaining
    cards.
    """
    remaining = {deck_id: list(cards) for deck_id, cards in buckets.items() if cards}
    out: list[Card] = []
    while remaining:
        total = sum(len(cards) for cards in remaining.values())
        r = rng.random() * total
        chosen = next(iter(remaining))
        for deck_id, cards in remaining.items():
            r -= len(cards)
            if r < 0:
                chosen = deck_id
                break
        out.append(remaining[chosen].pop(0))
        if not remaining[chosen]:
            del remaining[chosen]
    return out


def should_reverse(card: Card, deck: Optional[Deck], rng: random.Random) -> bool:
    if deck is None or not deck.reverse:
        return False
    if card.type == CardType.CLOZE or card.is_sub_card:
        return False
    return rng.random() < REVERSE_PROBABILITY


def generate_queue(
    store: LocalStore,
    deck_ids: Iterable[str],
    include_non_due: bool = False,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    filters: Optional[QueueFilters] = None,
) -> list[QueueItem]:
    """
    Build a session queue.

    Args:
        store: Local store (read only)
        deck_ids: Decks to study; unknown ids are ignored
        include_non_due: Practice mode, every eligible card counts
        now: Reference time for due checks
        rng: Random source (seed it for reproducible queues)
        filters: Optional tag/type/rating filters

    Returns:
        Ordered queue items with precomputed reverse decisions
    """
    now = now or utc_now()
    rng = rng or random.Random()

    review_buckets: dict[str, list[Card]] = {}
    new_buckets: dict[str, list[Card]] = {}
    all_buckets: dict[str, list[Card]] = {}
    seen: set[str] = set()

    for deck_id in dict.fromkeys(deck_ids):
        deck = store.decks.get(deck_id)
        if deck is None:
            continue
        cards = [
            c for c in store.cards_for_deck(deck_id)
            if c.id not in seen
            and is_eligible(c, filters, now)
            and (include_non_due or is_due(c, deck, now))
        ]
        if not cards:
            continue
        # Index iteration order is arbitrary; start every ordering from a stable list
        cards.sort(key=lambda c: (c.created_at, c.id))
        seen.update(c.id for c in cards)

        if include_non_due:
            all_buckets[deck_id] = order_cards(cards, deck, rng)[:max(0, deck.review_limit)]
            continue

        new_cards = [c for c in cards if c.is_new]
        review_cards = [c for c in cards if not c.is_new]
        review_buckets[deck_id] = order_cards(review_cards, deck, rng)[:max(0, deck.review_limit)]
        new_buckets[deck_id] = order_cards(new_cards, deck, rng, new_cards=True)[:max(0, deck.new_limit)]

    if include_non_due:
        chosen = interleave(all_buckets, rng)
    else:
        chosen = interleave(review_buckets, rng) + interleave(new_buckets, rng)

    return [
        QueueItem(card_id=card.id, reversed=should_reverse(card, store.decks.get(card.deck_id), rng))
        for card in chosen
    ]
