"""
Squash - collapse redundant queued operations before a push.

Rules:
- upserts and deletes are deduplicated by (type, entity), the latest wins
- a delete removes any upsert and block append for the same entity
- block appends are kept in order (each carries different content)
- survivors are ordered deck-upsert, deck-delete, card-upsert, card-delete,
  block-append, stable within a type
"""

from __future__ import annotations

from cardsync.schemas import Mutation, MutationType

PRIORITY = {
    MutationType.DECK_UPSERT: 1,
    MutationType.DECK_DELETE: 2,
    MutationType.CARD_UPSERT: 3,
    MutationType.CARD_DELETE: 4,
    MutationType.BLOCK_APPEND: 5,
}

REMOTE_TYPES = frozenset(PRIORITY)
UPSERT_TYPES = frozenset({MutationType.DECK_UPSERT, MutationType.CARD_UPSERT})
DELETE_TYPES = frozenset({MutationType.DECK_DELETE, MutationType.CARD_DELETE})

# delete type -> the types it cancels for the same entity
CANCELLED_BY_DELETE = {
    MutationType.DECK_DELETE: frozenset({MutationType.DECK_UPSERT}),
    MutationType.CARD_DELETE: frozenset({MutationType.CARD_UPSERT, MutationType.BLOCK_APPEND}),
}


def mutation_type(mutation: Mutation) -> MutationType:
    return MutationType(mutation.type)


def squash(mutations: list[Mutation]) -> tuple[list[Mutation], list[Mutation]]:
    """
    Squash a queue snapshot.

    Args:
        mutations: Queue entries in creation order

    Returns:
        (survivors in push order, dropped entries)
    """
    latest: dict[tuple[MutationType, str], Mutation] = {}
    for m in mutations:
        kind = mutation_type(m)
        if kind in UPSERT_TYPES or kind in DELETE_TYPES:
            latest[(kind, m.entity_id)] = m

    cancelled: set[tuple[MutationType, str]] = set()
    for (kind, entity_id) in latest:
        for victim in CANCELLED_BY_DELETE.get(kind, ()):
            cancelled.add((victim, entity_id))

    survivors = []
    dropped = []
    for m in mutations:
        kind = mutation_type(m)
        key = (kind, m.entity_id)
        if kind not in REMOTE_TYPES:
            continue
        if key in cancelled:
            dropped.append(m)
        elif key in latest and latest[key] is not m:
            dropped.append(m)
        else:
            survivors.append(m)

    order = {id(m): i for i, m in enumerate(survivors)}
    survivors.sort(key=lambda m: (PRIORITY[mutation_type(m)], order[id(m)]))
    return survivors, dropped
