"""
Temporary ids and the remap pass.

Records created locally get a temporary id ("tmp_" + uuid4 hex) so they can
be linked, studied and queued before the remote store has seen them. When a
create succeeds, every reference to the temporary id is rewritten to the
remote id: the record itself, deck and card links, the study session, the
selection state and queued mutation payloads.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from cardsync.storage.local_store import CARD, DECK, LocalStore

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp_"


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


def replace_id(value: Any, old_id: str, new_id: str) -> tuple[Any, bool]:
    """
    Replace exact occurrences of old_id inside nested dicts/lists/strings.

    Returns:
        (new_value, changed)
    """
    if isinstance(value, str):
        return (new_id, True) if value == old_id else (value, False)
    if isinstance(value, list):
        changed = False
        out = []
        for item in value:
            new_item, item_changed = replace_id(item, old_id, new_id)
            out.append(new_item)
            changed = changed or item_changed
        return out, changed
    if isinstance(value, dict):
        changed = False
        out = {}
        for key, item in value.items():
            new_item, item_changed = replace_id(item, old_id, new_id)
            out[key] = new_item
            changed = changed or item_changed
        return out, changed
    return value, False


async def remap_id(store: LocalStore, kind: str, old_id: str, new_id: str) -> int:
    """
    Rewrite every reference to old_id as new_id and persist the changes.

    Args:
        store: Local store (cache and durable state are both updated)
        kind: "deck" or "card"
        old_id: Temporary id
        new_id: Remote id assigned by create

    Returns:
        Number of records, mutations and state objects rewritten
    """
    if old_id == new_id:
        return 0

    rewritten = 0
    changed_cards = []

    # ---- The record itself ----
    if kind == DECK:
        deck = store.decks.pop(old_id, None)
        if deck is not None:
            deck.id = new_id
            deck.remote_id = new_id
            store.decks[new_id] = deck
            await store.rekey(DECK, old_id, deck.model_dump(mode="json"))
            rewritten += 1
        for card in store.cards.values():
            if card.deck_id == old_id:
                card.deck_id = new_id
                changed_cards.append(card)
    else:
        card = store.cards.pop(old_id, None)
        if card is not None:
            card.id = new_id
            card.remote_id = new_id
            store.cards[new_id] = card
            await store.rekey(CARD, old_id, card.model_dump(mode="json"))
            rewritten += 1

        # ---- Links on other cards ----
        for other in store.cards.values():
            touched = False
            if other.parent_card == old_id:
                other.parent_card = new_id
                touched = True
            if old_id in other.sub_cards:
                other.sub_cards = [new_id if s == old_id else s for s in other.sub_cards]
                touched = True
            for field in ("dy_root_card", "dy_prev_card", "dy_next_card"):
                if getattr(other, field) == old_id:
                    setattr(other, field, new_id)
                    touched = True
            if touched:
                changed_cards.append(other)

    if changed_cards:
        await store.save_cards(changed_cards)
        rewritten += len(changed_cards)
    store.reindex()

    # ---- Session and selection ----
    session = store.session
    if session is not None:
        data, changed = replace_id(session.model_dump(mode="json"), old_id, new_id)
        if changed:
            await store.save_session(type(session).model_validate(data))
            rewritten += 1

    data, changed = replace_id(store.selection.model_dump(mode="json"), old_id, new_id)
    if changed:
        await store.save_selection(type(store.selection).model_validate(data))
        rewritten += 1

    # ---- Queued mutations ----
    for mutation in list(store.queue):
        touched = False
        if mutation.entity_id == old_id:
            mutation.entity_id = new_id
            touched = True
        payload, changed = replace_id(mutation.payload, old_id, new_id)
        if changed:
            mutation.payload = payload
            touched = True
        if touched:
            await store.update_mutation(mutation)
            rewritten += 1

    logger.info(f"Remapped {kind} {old_id} -> {new_id} ({rewritten} references)")
    return rewritten
