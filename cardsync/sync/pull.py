"""
Pull - fetch remote changes into the local store.

Two modes:
- full (no previous pull recorded, or forced): list every non-archived
  record, then mark-and-sweep anything with a remote id that was not seen
- incremental: list records modified since the last successful pull,
  including archived ones so remote deletions can be applied

An unreadable last-pull timestamp is treated as an incremental pull from
the epoch (never as a full pull) so corrupt state cannot trigger a mass
sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from cardsync.remote.base import RemoteFilter, RemoteRecord, RemoteStore
from cardsync.remote.retry import RetryPolicy
from cardsync.schemas import Card, utc_now
from cardsync.storage.local_store import CARD, DECK, LocalStore, parse_timestamp
from cardsync.sync import mapper

logger = logging.getLogger(__name__)

LAST_PULL = "last_pull"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class PullResult:
    full: bool = False
    since: Optional[datetime] = None
    decks_upserted: int = 0
    cards_upserted: int = 0
    decks_removed: int = 0
    cards_removed: int = 0
    skipped_pending: int = 0
    removed_card_ids: list[str] = field(default_factory=list)


async def list_all(
    remote: RemoteStore,
    retry_policy: RetryPolicy,
    kind: str,
    record_filter: RemoteFilter,
) -> list[RemoteRecord]:
    """Follow pagination until the remote store reports no more pages."""
    records: list[RemoteRecord] = []
    cursor: Optional[str] = None
    while True:
        page = await retry_policy.run(
            lambda: remote.list_records(kind, record_filter, cursor),
            f"list {kind}",
        )
        records.extend(page.records)
        if not page.has_more or not page.next_cursor:
            return records
        cursor = page.next_cursor


def _is_removed(record: RemoteRecord) -> bool:
    return record.archived or bool((record.data or {}).get("hidden"))


async def remove_cards_cascade(store: LocalStore, card_ids: Iterable[str]) -> list[str]:
    """Remove cards and, recursively, their cloze sub-cards. Returns removed ids."""
    to_remove: list[str] = []
    seen: set[str] = set()
    stack = [i for i in card_ids if i in store.cards]
    while stack:
        card_id = stack.pop()
        if card_id in seen:
            continue
        seen.add(card_id)
        to_remove.append(card_id)
        stack.extend(child.id for child in store.sub_cards_of(card_id) if child.id not in seen)
    if to_remove:
        await store.remove_cards(to_remove)
    return to_remove


async def remove_deck_cascade(store: LocalStore, deck_id: str) -> list[str]:
    """Remove a deck and every card in it. Returns removed card ids."""
    card_ids = [c.id for c in store.cards_for_deck(deck_id)]
    removed = await remove_cards_cascade(store, card_ids)
    await store.remove_deck(deck_id)
    return removed


def _merge_card(incoming: Card, existing: Optional[Card]) -> Card:
    """
    Merge a pulled card over the local copy.

    Local review history survives when the remote copy has none (a record
    created moments ago can be read back before its history round-trips).
    """
    if existing is None:
        return incoming
    if not incoming.review_history and existing.review_history:
        incoming.review_history = list(existing.review_history)
    incoming.last_reconciled_at = existing.last_reconciled_at
    return incoming


async def pull_remote(
    store: LocalStore,
    remote: RemoteStore,
    retry_policy: RetryPolicy,
    full: bool = False,
    protected_ids: Optional[set[str]] = None,
) -> PullResult:
    """
    Run one pull.

    Args:
        store: Local store to update
        remote: Remote store to read from
        retry_policy: Applied to every list call
        full: Force a full pull with mark-and-sweep
        protected_ids: Entity ids with pending local mutations (never overwritten or swept)

    Returns:
        PullResult summary
    """
    started = utc_now()
    protected = protected_ids or set()

    raw_last = await store.get_meta(LAST_PULL)
    since: Optional[datetime] = None
    if not full and raw_last is not None:
        since = parse_timestamp(raw_last)
        if since is None:
            logger.warning(f"Unreadable last pull timestamp {raw_last!r}; pulling incrementally from epoch")
            since = EPOCH
    full = since is None
    result = PullResult(full=full, since=since)
    logger.info(f"Starting {'full' if full else 'incremental'} pull" + (f" since {since.isoformat()}" if since else ""))

    # ---- Decks ----
    known_decks = set(store.decks)
    deck_records = await list_all(
        remote, retry_policy, DECK, RemoteFilter(modified_since=since, include_archived=not full)
    )
    seen_decks: set[str] = set()
    upserted_decks = []
    for record in deck_records:
        if _is_removed(record):
            if record.id in store.decks:
                removed = await remove_deck_cascade(store, record.id)
                result.decks_removed += 1
                result.cards_removed += len(removed)
                result.removed_card_ids.extend(removed)
            continue
        seen_decks.add(record.id)
        if record.id in protected:
            result.skipped_pending += 1
            continue
        upserted_decks.append(mapper.deck_from_remote(record))
    if upserted_decks:
        await store.save_decks(upserted_decks)
        result.decks_upserted = len(upserted_decks)

    # ---- Cards ----
    card_records = await list_all(
        remote, retry_policy, CARD, RemoteFilter(modified_since=since, include_archived=not full)
    )
    new_deck_ids = [d for d in seen_decks if d not in known_decks]
    if not full and new_deck_ids:
        # Cards of decks seen for the first time may predate `since`
        card_records.extend(await list_all(
            remote, retry_policy, CARD, RemoteFilter(deck_ids=new_deck_ids)
        ))

    seen_cards: set[str] = set()
    archived_cards: list[str] = []
    upserted_cards: dict[str, Card] = {}
    for record in card_records:
        if _is_removed(record):
            archived_cards.append(record.id)
            continue
        seen_cards.add(record.id)
        if record.id in protected:
            result.skipped_pending += 1
            continue
        card = mapper.card_from_remote(record, store.decks)
        if card is None:
            continue
        upserted_cards[card.id] = _merge_card(card, store.cards.get(card.id))

    if upserted_cards:
        await store.save_cards(upserted_cards.values())
        result.cards_upserted = len(upserted_cards)

    removed = await remove_cards_cascade(store, [i for i in archived_cards if i not in protected])
    result.cards_removed += len(removed)
    result.removed_card_ids.extend(removed)

    # ---- Mark and sweep (full pulls only) ----
    if full:
        for deck in list(store.decks.values()):
            if deck.remote_id and deck.id not in seen_decks and deck.id not in protected:
                removed = await remove_deck_cascade(store, deck.id)
                result.decks_removed += 1
                result.cards_removed += len(removed)
                result.removed_card_ids.extend(removed)

        stale = [
            card.id for card in store.cards.values()
            if card.remote_id
            and card.deck_id in seen_decks
            and card.id not in seen_cards
            and card.id not in protected
        ]
        removed = await remove_cards_cascade(store, stale)
        result.cards_removed += len(removed)
        result.removed_card_ids.extend(removed)

    await store.set_meta(LAST_PULL, started.isoformat())
    logger.info(
        f"Pull finished: {result.decks_upserted} decks, {result.cards_upserted} cards upserted; "
        f"{result.decks_removed} decks, {result.cards_removed} cards removed"
    )
    return result
