"""
Local Store - durable keyed storage for decks, cards, the mutation queue and
session state.

Uses SQLAlchemy's asyncio engine (aiosqlite for the default sqlite file).
Every public call runs in its own transaction, so each call is atomic.

The store also owns the in-memory cache (decks, cards, queue, session,
selection) that the rest of cardsync reads. load() rebuilds it from disk;
every typed mutator below keeps it in step with what was written.
Components may mutate cached models directly but must persist them back
through this store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncGenerator, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cardsync.config import PUT_MANY_BATCH_SIZE, get_database_url
from cardsync.errors import StorageError
from cardsync.schemas import (
    Card,
    Deck,
    FsrsState,
    LearningState,
    Mutation,
    MutationType,
    Selection,
    Sm2State,
    StudySession,
    ensure_utc,
    load_scheduling_config,
    load_state_block,
    utc_now,
)
from cardsync.storage.models import Base, MetaRow, MutationRow, RecordRow

logger = logging.getLogger(__name__)

DECK = "deck"
CARD = "card"

SESSION_KEY = "session"
SELECTION_KEY = "selection"


class LocalStore:
    """
    Durable storage plus the in-memory cache built from it.

    Lifecycle: construct, await open() at process start, await close() on
    teardown. reset() wipes everything.
    """

    def __init__(self, database_url: Optional[str] = None, batch_size: int = PUT_MANY_BATCH_SIZE):
        self.database_url = database_url or get_database_url()
        self.batch_size = batch_size
        self._engine = None
        self._session_factory: Optional[async_sessionmaker] = None

        # In-memory cache
        self.decks: dict[str, Deck] = {}
        self.cards: dict[str, Card] = {}
        self.queue: list[Mutation] = []
        self.session: Optional[StudySession] = None
        self.selection: Selection = Selection()

        # Edge indexes: key -> card ids
        self._by_deck: dict[str, set[str]] = {}
        self._by_parent: dict[str, set[str]] = {}
        self._by_root: dict[str, set[str]] = {}
        self._indexed: dict[str, tuple[str, Optional[str], Optional[str]]] = {}

    # ---- Connection Management ----

    async def open(self) -> None:
        """Create the engine, make sure tables exist and load the cache."""
        self._ensure_sqlite_dir()
        self._engine = create_async_engine(
            self.database_url,
            echo=False,
            poolclass=NullPool if "sqlite" in self.database_url else None,
        )
        self._session_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialize local store: {e}") from e
        logger.info(f"Local store ready: {self.database_url}")
        await self.load()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Local store closed")

    async def reset(self) -> None:
        """
        DANGEROUS: delete all local data and recreate tables.

        Pending mutations are lost too.
        """
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not reset local store: {e}") from e
        logger.warning("Local store reset: all records, queue and meta dropped")
        await self.load()

    def _ensure_sqlite_dir(self) -> None:
        url = make_url(self.database_url)
        if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
            return
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise StorageError("Local store is not open")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"Local store transaction failed: {e}")
            raise StorageError(str(e)) from e

    # ---- Records ----

    async def get_all(self, kind: str) -> list[dict]:
        async with self._transaction() as session:
            result = await session.execute(select(RecordRow).where(RecordRow.kind == kind))
            return [row.data for row in result.scalars().all()]

    async def put(self, kind: str, record: dict) -> None:
        async with self._transaction() as session:
            await session.merge(_record_row(kind, record))

    async def put_many(self, kind: str, records: Iterable[dict]) -> int:
        """
        Write many records in one transaction, yielding to the loop between batches.

        Returns:
            Number of records written
        """
        records = list(records)
        async with self._transaction() as session:
            for start in range(0, len(records), self.batch_size):
                for record in records[start:start + self.batch_size]:
                    await session.merge(_record_row(kind, record))
                await session.flush()
                await asyncio.sleep(0)
        return len(records)

    async def delete(self, kind: str, record_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                delete(RecordRow).where(RecordRow.kind == kind, RecordRow.id == record_id)
            )

    async def delete_many(self, kind: str, record_ids: Iterable[str]) -> None:
        ids = list(record_ids)
        if not ids:
            return
        async with self._transaction() as session:
            await session.execute(
                delete(RecordRow).where(RecordRow.kind == kind, RecordRow.id.in_(ids))
            )

    # ---- Meta ----

    async def get_meta(self, key: str, default: Any = None) -> Any:
        async with self._transaction() as session:
            row = await session.get(MetaRow, key)
            return default if row is None else row.value

    async def set_meta(self, key: str, value: Any) -> None:
        async with self._transaction() as session:
            if value is None:
                await session.execute(delete(MetaRow).where(MetaRow.key == key))
            else:
                await session.merge(MetaRow(key=key, value=value))

    # ---- Mutation Queue ----

    async def append_mutation(self, mutation: Mutation) -> Mutation:
        """Persist a new mutation and return it with its assigned id."""
        async with self._transaction() as session:
            row = MutationRow(
                type=str(_enum_value(mutation.type)),
                entity_id=mutation.entity_id,
                payload=mutation.payload,
                retry_count=mutation.retry_count,
                reason=mutation.reason,
                parked=mutation.parked,
                last_error=mutation.last_error,
                queued_at=mutation.queued_at,
            )
            session.add(row)
            await session.flush()
            mutation.id = row.id
        self.queue.append(mutation)
        return mutation

    async def replace_mutation(self, old_ids: Iterable[int], mutation: Mutation) -> Mutation:
        """Remove superseded mutations and append the new one in a single transaction."""
        old_ids = [i for i in old_ids if i is not None]
        async with self._transaction() as session:
            if old_ids:
                await session.execute(delete(MutationRow).where(MutationRow.id.in_(old_ids)))
            row = MutationRow(
                type=str(_enum_value(mutation.type)),
                entity_id=mutation.entity_id,
                payload=mutation.payload,
                retry_count=mutation.retry_count,
                reason=mutation.reason,
                parked=mutation.parked,
                last_error=mutation.last_error,
                queued_at=mutation.queued_at,
            )
            session.add(row)
            await session.flush()
            mutation.id = row.id
        self.queue = [m for m in self.queue if m.id not in old_ids]
        self.queue.append(mutation)
        return mutation

    async def remove_mutation(self, mutation_id: int) -> None:
        await self.remove_mutations([mutation_id])

    async def remove_mutations(self, mutation_ids: Iterable[int]) -> None:
        ids = [i for i in mutation_ids if i is not None]
        if not ids:
            return
        async with self._transaction() as session:
            await session.execute(delete(MutationRow).where(MutationRow.id.in_(ids)))
        self.queue = [m for m in self.queue if m.id not in ids]

    async def update_mutation(self, mutation: Mutation) -> None:
        """Write back retry count, payload and parked state for an existing mutation."""
        async with self._transaction() as session:
            row = await session.get(MutationRow, mutation.id)
            if row is None:
                return
            row.entity_id = mutation.entity_id
            row.payload = mutation.payload
            row.retry_count = mutation.retry_count
            row.parked = mutation.parked
            row.last_error = mutation.last_error

    async def list_mutations(self) -> list[Mutation]:
        async with self._transaction() as session:
            result = await session.execute(select(MutationRow).order_by(MutationRow.id))
            return [_mutation_from_row(row) for row in result.scalars().all()]

    # ---- Cache ----

    async def load(self) -> None:
        """Rebuild the in-memory cache from durable storage."""
        self.decks = {}
        for data in await self.get_all(DECK):
            deck = _load_deck(data)
            if deck is not None:
                self.decks[deck.id] = deck

        self.cards = {}
        self._by_deck, self._by_parent, self._by_root, self._indexed = {}, {}, {}, {}
        for data in await self.get_all(CARD):
            card = _load_card(data)
            if card is not None:
                self.cards[card.id] = card
                self._index_card(card)

        self.queue = await self.list_mutations()

        raw_session = await self.get_meta(SESSION_KEY)
        self.session = _load_model(StudySession, raw_session) if raw_session else None

        raw_selection = await self.get_meta(SELECTION_KEY)
        self.selection = (_load_model(Selection, raw_selection) if raw_selection else None) or Selection()

        logger.info(
            f"Loaded {len(self.decks)} decks, {len(self.cards)} cards, "
            f"{len(self.queue)} queued mutations"
        )

    # ---- Typed Mutators ----

    async def save_deck(self, deck: Deck) -> Deck:
        await self.put(DECK, deck.model_dump(mode="json"))
        self.decks[deck.id] = deck
        return deck

    async def save_decks(self, decks: Iterable[Deck]) -> None:
        decks = list(decks)
        await self.put_many(DECK, [d.model_dump(mode="json") for d in decks])
        for deck in decks:
            self.decks[deck.id] = deck

    async def save_card(self, card: Card) -> Card:
        await self.put(CARD, card.model_dump(mode="json"))
        self.cards[card.id] = card
        self._index_card(card)
        return card

    async def save_cards(self, cards: Iterable[Card]) -> None:
        cards = list(cards)
        if not cards:
            return
        await self.put_many(CARD, [c.model_dump(mode="json") for c in cards])
        for card in cards:
            self.cards[card.id] = card
            self._index_card(card)

    async def remove_deck(self, deck_id: str) -> None:
        await self.delete(DECK, deck_id)
        self.decks.pop(deck_id, None)

    async def remove_cards(self, card_ids: Iterable[str]) -> None:
        ids = list(card_ids)
        await self.delete_many(CARD, ids)
        for card_id in ids:
            self.cards.pop(card_id, None)
            self._unindex_card(card_id)

    async def remove_card(self, card_id: str) -> None:
        await self.remove_cards([card_id])

    async def rekey(self, kind: str, old_id: str, record: dict) -> None:
        """Replace the row stored under old_id with a record under its new id."""
        async with self._transaction() as session:
            await session.execute(delete(RecordRow).where(RecordRow.kind == kind, RecordRow.id == old_id))
            await session.merge(_record_row(kind, record))

    async def save_session(self, session: Optional[StudySession]) -> None:
        await self.set_meta(SESSION_KEY, session.model_dump(mode="json") if session else None)
        self.session = session

    async def save_selection(self, selection: Selection) -> None:
        await self.set_meta(SELECTION_KEY, selection.model_dump(mode="json"))
        self.selection = selection

    # ---- Indexes ----

    def _index_card(self, card: Card) -> None:
        self._unindex_card(card.id)
        keys = (card.deck_id, card.parent_card, card.dy_root_card)
        self._by_deck.setdefault(card.deck_id, set()).add(card.id)
        if card.parent_card:
            self._by_parent.setdefault(card.parent_card, set()).add(card.id)
        if card.dy_root_card:
            self._by_root.setdefault(card.dy_root_card, set()).add(card.id)
        self._indexed[card.id] = keys

    def _unindex_card(self, card_id: str) -> None:
        keys = self._indexed.pop(card_id, None)
        if keys is None:
            return
        deck_id, parent_id, root_id = keys
        self._by_deck.get(deck_id, set()).discard(card_id)
        if parent_id:
            self._by_parent.get(parent_id, set()).discard(card_id)
        if root_id:
            self._by_root.get(root_id, set()).discard(card_id)

    def reindex(self) -> None:
        """Rebuild edge indexes after ids or links were rewritten in place."""
        self._by_deck, self._by_parent, self._by_root, self._indexed = {}, {}, {}, {}
        for card in self.cards.values():
            self._index_card(card)

    def cards_for_deck(self, deck_id: str) -> list[Card]:
        return [self.cards[i] for i in self._by_deck.get(deck_id, ()) if i in self.cards]

    def sub_cards_of(self, parent_id: str) -> list[Card]:
        children = [self.cards[i] for i in self._by_parent.get(parent_id, ()) if i in self.cards]
        return sorted(children, key=lambda c: (c.cloze_index or 0, c.created_at))

    def chain_members(self, root_id: str) -> list[Card]:
        members = [self.cards[i] for i in self._by_root.get(root_id, ()) if i in self.cards]
        if root_id in self.cards and self.cards[root_id] not in members:
            members.append(self.cards[root_id])
        return members

    def pending_entity_ids(self) -> set[str]:
        """Ids of entities with an unsent remote mutation (pulls must not overwrite these)."""
        return {m.entity_id for m in self.queue if m.type != MutationType.DERIVED_GENERATION_JOB}


# ---- Helpers ----

def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _record_row(kind: str, record: dict) -> RecordRow:
    record_id = record.get("id")
    if not record_id:
        raise StorageError(f"Cannot store a {kind} without an id")
    return RecordRow(kind=kind, id=record_id, data=record, updated_at=utc_now())


def _mutation_from_row(row: MutationRow) -> Mutation:
    return Mutation(
        id=row.id,
        type=row.type,
        entity_id=row.entity_id,
        payload=row.payload or {},
        retry_count=row.retry_count or 0,
        reason=row.reason,
        parked=bool(row.parked),
        last_error=row.last_error,
        queued_at=ensure_utc(row.queued_at) or utc_now(),
    )


def _load_model(model, data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Skipping unreadable {model.__name__} record: {e.error_count()} error(s)")
        return None


def _validate_keeping_identity(model, data: dict, identity: tuple[str, ...]):
    """
    Validate a persisted record, dropping top-level fields that fail.

    Fields named in identity are never dropped; if they are the problem the
    record is skipped.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        bad = {err["loc"][0] for err in e.errors() if err["loc"]}
        if bad & set(identity):
            logger.warning(f"Skipping unreadable {model.__name__} record {data.get('id')}")
            return None
        logger.warning(
            f"{model.__name__} {data.get('id')} has invalid fields {sorted(map(str, bad))}; defaults applied"
        )
        return _load_model(model, {k: v for k, v in data.items() if k not in bad})


def _load_deck(data: Any) -> Optional[Deck]:
    """Rebuild a cached deck; a malformed scheduling config falls back to defaults."""
    if not isinstance(data, dict) or not data.get("id"):
        logger.warning("Skipping deck record without an id")
        return None
    data = dict(data)
    config, config_error = load_scheduling_config(data.get("srs_config"))
    data["srs_config"] = config
    if config_error:
        logger.warning(f"Deck {data['id']} has an invalid stored scheduling config; defaults applied")
        data["srs_config_error"] = True
    return _validate_keeping_identity(Deck, data, ("id",))


def _load_card(data: Any) -> Optional[Card]:
    """Rebuild a cached card; malformed scheduling blocks fall back to defaults."""
    if not isinstance(data, dict) or not data.get("id") or not data.get("deck_id"):
        logger.warning("Skipping card record without an id or deck")
        return None
    data = dict(data)
    state_error = False
    for key, model in (("learning", LearningState), ("sm2", Sm2State), ("fsrs", FsrsState)):
        data[key], bad = load_state_block(model, data.get(key))
        state_error = state_error or bad
    if state_error:
        logger.warning(f"Card {data['id']} has invalid stored scheduling state; defaults applied")
        data["srs_state_error"] = True
    return _validate_keeping_identity(Card, data, ("id", "deck_id"))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp stored in meta; None when missing or corrupt."""
    if not value or not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
