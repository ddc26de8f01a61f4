"""
Study Service - session lifecycle, ratings and card/deck edits.

Every edit follows the same order: mutate the cached model, persist it
through the local store, then enqueue the remote mutation. A rating whose
write fails is rolled back in memory and surfaced as RatingNotSavedError, so
a crash can lose the sync intent but never the scheduling state.

Session Flow:
1. start_session() builds the queue and persists the session
2. current_card() returns the card at the cursor (deleted cards are skipped)
3. rate() / advance() move the cursor; every change is persisted
4. acknowledge_completion() or abandon() discards the session
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from cardsync.errors import Notifier, RatingNotSavedError, StorageError, log_notifier
from cardsync.schemas import Card, CardType, Deck, Selection, StudySession, Tag, utc_now
from cardsync.session_builder import QueueFilters, generate_queue
from cardsync.srs.constants import Rating
from cardsync.srs.scheduler import apply_rating
from cardsync.storage.local_store import LocalStore
from cardsync.sync.id_remap import new_temp_id
from cardsync.sync.pull import remove_cards_cascade, remove_deck_cascade

logger = logging.getLogger(__name__)

RATING_REASON = "rating"


def _restore(target, snapshot) -> None:
    """Copy every field of snapshot back onto target (same model type)."""
    for name in type(target).model_fields:
        setattr(target, name, getattr(snapshot, name))


class StudyService:
    """
    User-facing operations on top of the store and the queue.

    Args:
        store: Local store
        queue_manager: Receives a mutation for every persisted edit
        cloze: ClozeReconciler, run after cloze parents are saved
        chains: ChainReconciler, told about every scheduled rating
        notifier: Receives user-facing notices
    """

    def __init__(
        self,
        store: LocalStore,
        queue_manager,
        cloze=None,
        chains=None,
        notifier: Notifier = log_notifier,
    ):
        self.store = store
        self.queue_manager = queue_manager
        self.cloze = cloze
        self.chains = chains
        self.notifier = notifier
        # (card snapshot before the rating, session snapshot before the rating)
        self._undo: Optional[tuple[Optional[Card], StudySession]] = None

    # ---- Session Lifecycle ----

    async def start_session(
        self,
        deck_ids: Optional[Iterable[str]] = None,
        include_non_due: bool = False,
        preview: Optional[bool] = None,
        filters: Optional[QueueFilters] = None,
        now: Optional[datetime] = None,
        rng=None,
    ) -> Optional[StudySession]:
        """
        Start a study session, replacing any unfinished one.

        Args:
            deck_ids: Decks to study (default: the selection, else every visible deck)
            include_non_due: Study cards that are not due yet
            preview: Leave scheduling untouched (defaults to include_non_due)
            filters: Optional queue filters

        Returns:
            The new session, or None when nothing is available
        """
        deck_ids = list(deck_ids or self.store.selection.study_deck_ids or
                        [d.id for d in self.store.decks.values() if not d.hidden])
        if not deck_ids:
            self.notifier("No decks available")
            return None

        queue = generate_queue(self.store, deck_ids, include_non_due=include_non_due,
                               now=now, rng=rng, filters=filters)
        if not queue:
            self.notifier("No cards to study right now")
            return None

        session = StudySession(
            id=uuid.uuid4().hex,
            deck_ids=deck_ids,
            card_queue=queue,
            preview=include_non_due if preview is None else preview,
            studying_non_due=include_non_due,
        )
        await self.store.save_session(session)
        self._undo = None
        logger.info(f"Started session {session.id} with {len(queue)} cards from {len(deck_ids)} deck(s)")
        return session

    async def current_card(self) -> Optional[tuple[Card, bool]]:
        """
        The card under the session cursor and its reverse decision.

        Cards deleted since the queue was built are skipped (and recorded).
        """
        session = self.store.session
        if session is None:
            return None
        moved = False
        while not session.finished:
            item = session.card_queue[session.current_index]
            card = self.store.cards.get(item.card_id)
            if card is not None:
                break
            session.skipped.append(item.card_id)
            session.current_index += 1
            moved = True
        if moved:
            await self.store.save_session(session)
        if session.finished:
            return None
        item = session.card_queue[session.current_index]
        return self.store.cards[item.card_id], item.reversed

    async def rate(
        self,
        rating: Union[Rating, int, str],
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Card]:
        """
        Rate the current session card and move to the next one.

        In preview sessions only the counters move.

        Raises:
            RatingNotSavedError: The rating could not be persisted (rolled back)
        """
        current = await self.current_card()
        if current is None:
            return None
        card, _ = current
        session = self.store.session
        rating = Rating.parse(rating)
        session_before = session.model_copy(deep=True)

        card_before = None
        if not session.preview:
            card_before = card.model_copy(deep=True)
            await self.rate_card(card, rating, duration_ms=duration_ms, now=now, notify_chains=False)

        session.rating_counts[rating.name.lower()] = session.rating_counts.get(rating.name.lower(), 0) + 1
        session.completed.append(card.id)
        session.current_index += 1
        await self.store.save_session(session)
        self._undo = (card_before, session_before)

        if not session.preview and self.chains is not None:
            await self.chains.on_rated(card, rating)
        return card

    async def rate_card(
        self,
        card: Card,
        rating: Union[Rating, int, str],
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None,
        notify_chains: bool = True,
    ) -> Card:
        """
        Schedule a card, persist it, then enqueue the upsert.

        Raises:
            RatingNotSavedError: The write failed; the card is restored
        """
        deck = self.store.decks.get(card.deck_id)
        if deck is None:
            raise RatingNotSavedError(f"Deck {card.deck_id} not found for card {card.id}")

        snapshot = card.model_copy(deep=True)
        apply_rating(card, rating, deck, now=now, duration_ms=duration_ms)
        try:
            await self.store.save_card(card)
        except StorageError as e:
            _restore(card, snapshot)
            logger.error(f"Rating for card {card.id} not saved, rolled back: {e}")
            self.notifier("Could not save your rating. Please try again.")
            raise RatingNotSavedError(str(e)) from e

        await self.queue_manager.enqueue_card_upsert(card, reason=RATING_REASON)
        if notify_chains and self.chains is not None:
            await self.chains.on_rated(card, rating)
        return card

    async def undo_last_rating(self) -> bool:
        """Restore the card and session to before the last rating. One level only."""
        if self._undo is None or self.store.session is None:
            return False
        card_before, session_before = self._undo
        self._undo = None

        if card_before is not None:
            card = self.store.cards.get(card_before.id)
            if card is not None:
                _restore(card, card_before)
                card.updated_at = utc_now()
                await self.store.save_card(card)
                await self.queue_manager.enqueue_card_upsert(card, reason="undo")
        await self.store.save_session(session_before)
        logger.info("Undid last rating")
        return True

    async def advance(self) -> None:
        """Skip the current card without rating it."""
        current = await self.current_card()
        if current is None:
            return
        session = self.store.session
        session.skipped.append(current[0].id)
        session.current_index += 1
        await self.store.save_session(session)
        self._undo = None

    async def abandon(self) -> None:
        await self.store.save_session(None)
        self._undo = None

    async def acknowledge_completion(self) -> Optional[dict[str, Any]]:
        """
        Discard a finished session.

        Returns:
            Summary counts, or None when there is no finished session
        """
        session = self.store.session
        if session is None or not session.finished:
            return None
        summary = {
            "reviewed": len(session.completed),
            "skipped": len(session.skipped),
            **session.rating_counts,
        }
        await self.store.save_session(None)
        self._undo = None
        return summary

    async def set_study_decks(self, deck_ids: Iterable[str]) -> Selection:
        selection = self.store.selection.model_copy(update={"study_deck_ids": list(deck_ids)})
        await self.store.save_selection(selection)
        return selection

    # ---- Decks ----

    async def create_deck(self, name: str, **fields) -> Deck:
        now = utc_now()
        deck = Deck.model_validate({**fields, "id": new_temp_id(), "name": name,
                                    "created_at": now, "updated_at": now})
        await self.store.save_deck(deck)
        await self.queue_manager.enqueue_deck_upsert(deck)
        logger.info(f"Created deck {deck.id} ({name})")
        return deck

    async def update_deck(self, deck_id: str, **changes) -> Deck:
        """
        Apply field changes to a deck.

        Raises:
            KeyError: Unknown deck
            pydantic.ValidationError: Invalid field values
        """
        deck = self.store.decks[deck_id]
        data = {**deck.model_dump(), **changes, "updated_at": utc_now()}
        updated = Deck.model_validate(data)
        await self.store.save_deck(updated)
        await self.queue_manager.enqueue_deck_upsert(updated)
        return updated

    async def delete_deck(self, deck_id: str) -> int:
        """Delete a deck and its cards locally and queue the remote archive."""
        deck = self.store.decks.get(deck_id)
        if deck is None:
            return 0
        removed = await remove_deck_cascade(self.store, deck_id)
        await self.queue_manager.enqueue_deck_delete(deck)

        selection = self.store.selection
        if deck_id in selection.study_deck_ids or selection.selected_deck_id == deck_id:
            await self.store.save_selection(selection.model_copy(update={
                "study_deck_ids": [i for i in selection.study_deck_ids if i != deck_id],
                "selected_deck_id": None if selection.selected_deck_id == deck_id else selection.selected_deck_id,
            }))
        logger.info(f"Deleted deck {deck_id} with {len(removed)} card(s)")
        return len(removed)

    # ---- Cards ----

    async def create_card(
        self,
        deck_id: str,
        front: str,
        back: str = "",
        card_type: Union[CardType, str] = CardType.FRONT_BACK,
        notes: str = "",
        tags: Optional[list[Union[Tag, dict, str]]] = None,
        **fields,
    ) -> Card:
        """
        Create a card (cloze parents get their sub-cards right away).

        Raises:
            KeyError: Unknown deck
        """
        if deck_id not in self.store.decks:
            raise KeyError(f"Deck {deck_id} not found")
        now = utc_now()
        card = Card.model_validate({
            **fields,
            "id": new_temp_id(),
            "deck_id": deck_id,
            "type": card_type,
            "front": front,
            "back": back,
            "notes": notes,
            "tags": [{"name": t} if isinstance(t, str) else t for t in (tags or [])],
            "created_at": now,
            "updated_at": now,
        })
        await self.store.save_card(card)
        await self.queue_manager.enqueue_card_upsert(card)
        if card.is_cloze_parent and self.cloze is not None:
            await self.cloze.reconcile_parent(card)
        return card

    async def update_card(self, card_id: str, **changes) -> Card:
        """
        Apply field changes to a card and re-derive cloze sub-cards.

        Raises:
            KeyError: Unknown card
            pydantic.ValidationError: Invalid field values
        """
        card = self.store.cards[card_id]
        try:
            updated = Card.model_validate({**card.model_dump(), **changes, "updated_at": utc_now()})
        except ValidationError:
            logger.warning(f"Rejected invalid edit for card {card_id}")
            raise
        await self.store.save_card(updated)
        await self.queue_manager.enqueue_card_upsert(updated)
        if updated.is_cloze_parent and self.cloze is not None:
            await self.cloze.reconcile_parent(updated)
        return updated

    async def delete_card(self, card_id: str) -> list[str]:
        """Delete a card and its sub-cards locally and queue their remote archives."""
        cards = {card_id: self.store.cards.get(card_id)}
        if cards[card_id] is None:
            return []
        for child in self.store.sub_cards_of(card_id):
            cards[child.id] = child
        removed = await remove_cards_cascade(self.store, [card_id])
        for removed_id in removed:
            card = cards.get(removed_id)
            if card is not None:
                await self.queue_manager.enqueue_card_delete(card)

        parent = self.store.cards.get(cards[card_id].parent_card or "")
        if parent is not None and card_id in parent.sub_cards:
            parent.sub_cards = [i for i in parent.sub_cards if i != card_id]
            await self.store.save_card(parent)
            await self.queue_manager.enqueue_card_upsert(parent)
        return removed
