"""
Dynamic-context chains.

A deck with dynamic_context enabled grows a chain of generated variant
cards: each time the newest card in a chain is recalled well (good or easy,
and the card before it was too), the generator writes the next variant.
The new card links to the chain through dy_root_card/dy_prev_card and the
previous card's dy_next_card; every older variant sharing the root is
retired so only the newest one is studied.

Generation intents are persisted as derived-generation-job mutations keyed
by the previous card's id, so a request made offline (or one that fails)
is resumed on a later sync. A job is dropped once the previous card already
has a next link, or once its deck stops chaining.
"""

from __future__ import annotations

import logging
from typing import Optional

from cardsync.errors import GenerationError, Notifier, log_notifier
from cardsync.generation import ChainGenerator, parse_generated
from cardsync.schemas import Card, CardType, Deck, Mutation, MutationType, utc_now
from cardsync.srs.constants import Rating
from cardsync.storage.local_store import LocalStore
from cardsync.sync.id_remap import new_temp_id
from cardsync.sync.queue_manager import MAX_QUEUE_ATTEMPTS

logger = logging.getLogger(__name__)

CHAIN_CONTEXT_LIMIT = 8
RECALLED = (Rating.GOOD, Rating.EASY)


def last_rating(card: Card) -> Optional[int]:
    if not card.review_history:
        return None
    return card.review_history[-1].rating


def was_recalled(card: Card) -> bool:
    return last_rating(card) in RECALLED


def build_chain_prompt(deck: Deck, history: list[Card]) -> str:
    """Prompt for the next variant, given the chain so far (oldest first)."""
    lines = []
    if deck.dy_prompt:
        lines.append(deck.dy_prompt.strip())
        lines.append("")
    lines.append("Cards so far in this chain (oldest first):")
    for i, card in enumerate(history, 1):
        lines.append(f"{i}. Front: {card.front}")
        if card.back:
            lines.append(f"   Back: {card.back}")
    lines.append("")
    lines.append("Write the next card in the chain as a JSON object with front, back and notes.")
    return "\n".join(lines)


class ChainReconciler:
    """
    Creates chain variants after good recalls and resumes queued jobs.

    Args:
        store: Local store
        queue_manager: Owns the durable job queue and receives upserts
        generator: ChainGenerator collaborator (None disables generation)
        notifier: Receives user-facing notices
    """

    def __init__(
        self,
        store: LocalStore,
        queue_manager,
        generator: Optional[ChainGenerator] = None,
        notifier: Notifier = log_notifier,
        max_attempts: int = MAX_QUEUE_ATTEMPTS,
    ):
        self.store = store
        self.queue_manager = queue_manager
        self.generator = generator
        self.notifier = notifier
        self.max_attempts = max_attempts
        self._running: set[str] = set()

    # ---- Triggers ----

    def chain_anchor(self, card: Card) -> Optional[Card]:
        """
        The card a new variant would follow, or None if the chain should not grow.

        Sub-cards anchor on their cloze parent, and only once every live
        sibling was recalled.
        """
        anchor = card
        if card.is_sub_card:
            parent = self.store.cards.get(card.parent_card)
            if parent is None:
                return None
            live = [c for c in self.store.sub_cards_of(parent.id) if not c.suspended and not c.retired]
            if not live or not all(was_recalled(c) for c in live):
                return None
            anchor = parent
        elif not was_recalled(card):
            return None

        if anchor.retired:
            return None
        deck = self.store.decks.get(anchor.deck_id)
        if deck is None or not deck.dynamic_context:
            return None
        if anchor.dy_next_card and anchor.dy_next_card in self.store.cards:
            return None
        if anchor.dy_prev_card:
            prev = self.store.cards.get(anchor.dy_prev_card)
            if prev is not None and not self._recalled_link(prev):
                return None
        return anchor

    def _recalled_link(self, card: Card) -> bool:
        if card.is_cloze_parent:
            children = [c for c in self.store.sub_cards_of(card.id) if not c.retired]
            return bool(children) and all(was_recalled(c) for c in children)
        return was_recalled(card)

    async def on_rated(self, card: Card, rating) -> Optional[Card]:
        """
        React to a rating. Call after the rating is persisted.

        Returns:
            The generated card, or None (not eligible, or queued for later)
        """
        if Rating.parse(rating) not in RECALLED:
            return None
        anchor = self.chain_anchor(card)
        if anchor is None:
            return None

        job = await self.queue_manager.enqueue(
            MutationType.DERIVED_GENERATION_JOB,
            anchor.id,
            {"root": anchor.dy_root_card or anchor.id},
            reason="chain",
        )
        return await self._run_job(job)

    async def resume_pending(self) -> int:
        """Run every queued generation job. Returns the number of cards created."""
        jobs = [m for m in self.store.queue if m.type == MutationType.DERIVED_GENERATION_JOB]
        created = 0
        for job in jobs:
            if await self._run_job(job) is not None:
                created += 1
        return created

    # ---- Jobs ----

    def chain_history(self, anchor: Card) -> list[Card]:
        """The anchor and its predecessors, oldest first."""
        history = [anchor]
        seen = {anchor.id}
        current = anchor
        while current.dy_prev_card and len(history) < CHAIN_CONTEXT_LIMIT:
            prev = self.store.cards.get(current.dy_prev_card)
            if prev is None or prev.id in seen:
                break
            history.append(prev)
            seen.add(prev.id)
            current = prev
        return list(reversed(history))

    async def _drop(self, job: Mutation, why: str) -> None:
        logger.info(f"Dropping chain job for {job.entity_id}: {why}")
        await self.store.remove_mutation(job.id)

    async def _run_job(self, job: Mutation) -> Optional[Card]:
        if job.entity_id in self._running:
            return None
        self._running.add(job.entity_id)
        try:
            return await self._generate_next(job)
        finally:
            self._running.discard(job.entity_id)

    async def _generate_next(self, job: Mutation) -> Optional[Card]:
        if not any(q.id == job.id for q in self.store.queue):
            return None

        anchor = self.store.cards.get(job.entity_id)
        if anchor is None:
            await self._drop(job, "card no longer exists")
            return None
        deck = self.store.decks.get(anchor.deck_id)
        if deck is None or not deck.dynamic_context:
            await self._drop(job, "deck no longer chains")
            return None
        if anchor.dy_next_card and anchor.dy_next_card in self.store.cards:
            await self._drop(job, "next link already exists")
            return None
        if self.generator is None:
            return None

        prompt = build_chain_prompt(deck, self.chain_history(anchor))
        try:
            generated = parse_generated(await self.generator.generate(prompt))
        except GenerationError as e:
            await self._record_failure(job, e)
            return None

        now = utc_now()
        root_id = anchor.dy_root_card or anchor.id
        card = Card(
            id=new_temp_id(),
            deck_id=anchor.deck_id,
            type=CardType.FRONT_BACK,
            front=generated.front.strip(),
            back=generated.back.strip(),
            notes=generated.notes.strip(),
            tags=[tag.model_copy() for tag in anchor.tags],
            dy_root_card=root_id,
            dy_prev_card=anchor.id,
            created_at=now,
            updated_at=now,
        )
        anchor.dy_next_card = card.id
        anchor.updated_at = now

        changed = {anchor.id: anchor}
        for member in self.store.chain_members(root_id):
            for variant in [member] + self.store.sub_cards_of(member.id):
                if variant.retired:
                    continue
                variant.suspended = True
                variant.retired = True
                variant.updated_at = now
                changed[variant.id] = variant

        await self.store.save_cards([card] + list(changed.values()))
        await self.store.remove_mutation(job.id)
        await self.queue_manager.enqueue_card_upsert(card, reason="chain")
        for variant in changed.values():
            await self.queue_manager.enqueue_card_upsert(variant, reason="chain")

        logger.info(f"Generated chain card {card.id} after {anchor.id} (retired {len(changed) - 1} variant(s))")
        return card

    async def _record_failure(self, job: Mutation, error: Exception) -> None:
        job.retry_count += 1
        job.last_error = str(error)
        if job.retry_count >= self.max_attempts:
            await self.store.remove_mutation(job.id)
            logger.error(f"Giving up on chain job for {job.entity_id} after {job.retry_count} attempts: {error}")
            self.notifier(f"Could not generate the next chain card: {error}")
            return
        logger.warning(f"Chain generation failed for {job.entity_id} (attempt {job.retry_count}): {error}")
        await self.store.update_mutation(job)
