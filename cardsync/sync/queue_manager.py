"""
Queue Manager - turns local edits into eventually-applied remote mutations.

Main workflow:
1. enqueue() appends a mutation, superseding older upserts for the same
   entity (a delete cancels pending upserts), and fires the on_enqueue hook
2. drain_queue() squashes the queue, pushes survivors one by one with a
   fixed pacing delay and remaps temporary ids after every create
3. pull() fetches remote changes (see cardsync.sync.pull)

Failure policy per mutation:
- transient (429/5xx, timeouts) and unmet dependencies: retry count +1, stays queued
- permanent (other 4xx): retry count +1, parked until rearm()
- retry count reaching MAX_QUEUE_ATTEMPTS: dropped and the user is notified
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from cardsync.config import REQUEST_PACING_S
from cardsync.errors import DependencyError, Notifier, RemoteError, RemoteNotConfiguredError, log_notifier
from cardsync.remote.base import RemoteStore
from cardsync.remote.retry import RetryPolicy
from cardsync.schemas import Card, Deck, Mutation, MutationType, utc_now
from cardsync.storage.local_store import CARD, DECK, LocalStore
from cardsync.sync import mapper
from cardsync.sync.id_remap import is_temp_id, remap_id
from cardsync.sync.pull import PullResult, pull_remote
from cardsync.sync.squash import (
    CANCELLED_BY_DELETE,
    DELETE_TYPES,
    REMOTE_TYPES,
    UPSERT_TYPES,
    mutation_type,
    squash,
)

logger = logging.getLogger(__name__)

MAX_QUEUE_ATTEMPTS = 5

# Meta keys
LAST_QUEUE_ERROR = "last_queue_error"
LAST_PUSH = "last_push"
QUEUE_CHANGED = "queue_changed"


@dataclass
class DrainResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0
    squashed: int = 0
    remapped: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class QueueManager:
    """
    Durable mutation queue plus the push and pull phases of a sync cycle.

    Args:
        store: Local store (owns the queue)
        remote: Remote store collaborator
        retry_policy: Applied to every remote call
        pacing: Seconds between sequential remote requests
        sleep: Awaitable sleep (injectable for tests)
        notifier: Receives user-facing notices
        on_enqueue: Called with each new mutation (the engine's "sync soon")
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        retry_policy: Optional[RetryPolicy] = None,
        pacing: float = REQUEST_PACING_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notifier: Notifier = log_notifier,
        on_enqueue: Optional[Callable[[Mutation], None]] = None,
        max_attempts: int = MAX_QUEUE_ATTEMPTS,
    ):
        self.store = store
        self.remote = remote
        self.retry_policy = retry_policy or RetryPolicy()
        self.pacing = pacing
        self._sleep = sleep
        self.notifier = notifier
        self.on_enqueue = on_enqueue
        self.max_attempts = max_attempts

    # ---- Enqueue ----

    async def enqueue(
        self,
        kind: Union[MutationType, str],
        entity_id: str,
        payload: Optional[dict] = None,
        reason: Optional[str] = None,
    ) -> Mutation:
        """
        Append a mutation to the durable queue.

        An earlier upsert (or delete, or generation job) of the same type for
        the same entity is superseded; a delete also cancels pending upserts
        and block appends for that entity.

        Returns:
            The persisted mutation
        """
        kind = MutationType(kind)
        cancels = CANCELLED_BY_DELETE.get(kind, frozenset())
        superseded = []
        for queued in self.store.queue:
            if queued.entity_id != entity_id:
                continue
            queued_kind = mutation_type(queued)
            if queued_kind == kind and kind != MutationType.BLOCK_APPEND:
                superseded.append(queued.id)
            elif queued_kind in cancels:
                superseded.append(queued.id)

        mutation = Mutation(type=kind, entity_id=entity_id, payload=payload or {}, reason=reason)
        await self.store.replace_mutation(superseded, mutation)
        await self.store.set_meta(QUEUE_CHANGED, utc_now().isoformat())
        logger.debug(f"Queued {kind.value} {entity_id} (superseded {len(superseded)})")

        if self.on_enqueue is not None:
            self.on_enqueue(mutation)
        return mutation

    async def enqueue_deck_upsert(self, deck: Deck, reason: Optional[str] = None) -> Mutation:
        return await self.enqueue(MutationType.DECK_UPSERT, deck.id, deck.model_dump(mode="json"), reason)

    async def enqueue_card_upsert(self, card: Card, reason: Optional[str] = None) -> Mutation:
        return await self.enqueue(MutationType.CARD_UPSERT, card.id, card.model_dump(mode="json"), reason)

    async def enqueue_deck_delete(self, deck: Deck) -> Mutation:
        return await self.enqueue(MutationType.DECK_DELETE, deck.id, {"remote_id": deck.remote_id})

    async def enqueue_card_delete(self, card: Card) -> Mutation:
        return await self.enqueue(MutationType.CARD_DELETE, card.id, {"remote_id": card.remote_id})

    def has_active_mutations(self) -> bool:
        """True while any remote-bound mutation is waiting (parked ones excluded)."""
        return any(mutation_type(m) in REMOTE_TYPES and not m.parked for m in self.store.queue)

    def parked(self) -> list[Mutation]:
        return [m for m in self.store.queue if m.parked]

    async def rearm(self, mutation_id: int) -> bool:
        """Re-arm a parked mutation so the next drain tries it again."""
        for m in self.store.queue:
            if m.id == mutation_id and m.parked:
                m.parked = False
                await self.store.update_mutation(m)
                logger.info(f"Re-armed mutation {mutation_id} ({m.type} {m.entity_id})")
                return True
        return False

    # ---- Push ----

    async def drain_queue(self) -> DrainResult:
        """
        Push every pending remote mutation.

        Returns:
            DrainResult summary
        """
        result = DrainResult()
        pending = [m for m in self.store.queue if mutation_type(m) in REMOTE_TYPES and not m.parked]
        survivors, dropped = squash(pending)
        if dropped:
            await self.store.remove_mutations([m.id for m in dropped])
            result.squashed = len(dropped)
            logger.info(f"Squashed {len(dropped)} redundant mutation(s)")

        for index, mutation in enumerate(survivors):
            # Superseded or cancelled by an edit made during this drain
            if not any(q.id == mutation.id for q in self.store.queue):
                continue
            if index > 0 and self.pacing:
                await self._sleep(self.pacing)

            result.attempted += 1
            try:
                await self._execute(mutation, result)
            except RemoteNotConfiguredError:
                # Nothing can be pushed; keep every mutation and its attempt count
                raise
            except DependencyError as e:
                await self._record_failure(mutation, e, retryable=True, result=result)
            except RemoteError as e:
                await self._record_failure(mutation, e, retryable=e.retryable, result=result)
            else:
                await self.store.remove_mutation(mutation.id)
                result.succeeded += 1

        now = utc_now().isoformat()
        await self.store.set_meta(LAST_PUSH, now)
        if result.ok:
            await self.store.set_meta(LAST_QUEUE_ERROR, None)
        if result.attempted:
            logger.info(
                f"Drain finished: {result.succeeded} ok, {result.failed} failed, "
                f"{result.dropped} dropped"
            )
        return result

    async def _record_failure(self, mutation: Mutation, error: Exception, retryable: bool,
                              result: DrainResult) -> None:
        result.failed += 1
        message = getattr(error, "message", None) or str(error)
        mutation.retry_count += 1
        mutation.last_error = message
        await self.store.set_meta(LAST_QUEUE_ERROR, {
            "at": utc_now().isoformat(),
            "type": str(mutation_type(mutation).value),
            "message": message,
        })

        label = f"{mutation_type(mutation).value} {mutation.entity_id}"
        if mutation.retry_count >= self.max_attempts:
            await self.store.remove_mutation(mutation.id)
            result.dropped += 1
            logger.error(f"Dropping {label} after {mutation.retry_count} attempts: {message}")
            self.notifier(f"Sync gave up on a change after {mutation.retry_count} attempts: {message}")
            return

        if not retryable:
            mutation.parked = True
            logger.error(f"Permanent failure for {label}: {message}")
            self.notifier(f"Sync failed and will not retry until re-armed: {message}")
        else:
            logger.warning(f"Transient failure for {label} (attempt {mutation.retry_count}): {message}")
        await self.store.update_mutation(mutation)

    async def _call(self, description: str, call):
        return await self.retry_policy.run(call, description)

    async def _execute(self, mutation: Mutation, result: DrainResult) -> None:
        kind = mutation_type(mutation)
        if kind == MutationType.DECK_UPSERT:
            await self._push_deck(mutation, result)
        elif kind == MutationType.CARD_UPSERT:
            await self._push_card(mutation, result)
        elif kind in DELETE_TYPES:
            await self._push_delete(mutation)
        elif kind == MutationType.BLOCK_APPEND:
            await self._push_blocks(mutation)

    async def _push_deck(self, mutation: Mutation, result: DrainResult) -> None:
        deck = self.store.decks.get(mutation.entity_id)
        if deck is None:
            logger.info(f"Deck {mutation.entity_id} no longer exists; skipping upsert")
            return
        payload = mapper.deck_to_payload(deck)
        if deck.remote_id:
            await self._call(f"update deck {deck.remote_id}", lambda: self.remote.update(DECK, deck.remote_id, payload))
            return

        new_id = await self._call(f"create deck {deck.id}", lambda: self.remote.create(DECK, payload))
        old_id = deck.id
        if old_id in self.store.decks:
            await remap_id(self.store, DECK, old_id, new_id)
        result.remapped[old_id] = new_id

    async def _push_card(self, mutation: Mutation, result: DrainResult) -> None:
        card = self.store.cards.get(mutation.entity_id)
        if card is None:
            logger.info(f"Card {mutation.entity_id} no longer exists; skipping upsert")
            return
        payload = mapper.card_to_payload(card, self.store.decks)
        if card.remote_id:
            await self._call(f"update card {card.remote_id}", lambda: self.remote.update(CARD, card.remote_id, payload))
            return

        new_id = await self._call(f"create card {card.id}", lambda: self.remote.create(CARD, payload))
        old_id = card.id
        if old_id in self.store.cards:
            await remap_id(self.store, CARD, old_id, new_id)
            await self._requeue_linked(new_id)
        result.remapped[old_id] = new_id

    async def _requeue_linked(self, card_id: str) -> None:
        """
        Re-send remote cards whose links to card_id were omitted while it was temporary.

        Cards that still have their own upsert queued will carry the link anyway.
        """
        queued = {m.entity_id for m in self.store.queue if mutation_type(m) in UPSERT_TYPES}
        for other in list(self.store.cards.values()):
            if other.id == card_id or not other.remote_id or other.id in queued:
                continue
            links = (other.parent_card, other.dy_root_card, other.dy_prev_card, other.dy_next_card)
            if card_id in links or card_id in other.sub_cards:
                await self.enqueue_card_upsert(other, reason="link")

    async def _push_delete(self, mutation: Mutation) -> None:
        kind = DECK if mutation_type(mutation) == MutationType.DECK_DELETE else CARD
        remote_id = mutation.payload.get("remote_id")
        if not remote_id and not is_temp_id(mutation.entity_id):
            remote_id = mutation.entity_id
        if not remote_id:
            # Never reached the remote store; nothing to archive
            return
        await self._call(f"archive {kind} {remote_id}", lambda: self.remote.archive(kind, remote_id))

    async def _push_blocks(self, mutation: Mutation) -> None:
        card = self.store.cards.get(mutation.entity_id)
        target = card.remote_id if card is not None else None
        if target is None and card is None and not is_temp_id(mutation.entity_id):
            target = mutation.entity_id
        if not target:
            raise DependencyError(f"Card not yet synced for block append {mutation.entity_id}")
        blocks = list(mutation.payload.get("blocks") or [])
        await self._call(f"append blocks {target}", lambda: self.remote.append_blocks(target, blocks))

    # ---- Pull ----

    async def pull(self, full: bool = False) -> PullResult:
        """
        Fetch remote changes into the local store.

        Local records with a pending mutation are never overwritten.
        """
        return await pull_remote(
            self.store,
            self.remote,
            self.retry_policy,
            full=full,
            protected_ids=self.store.pending_entity_ids(),
        )
