"""
Tests for the study service (sessions, ratings, undo, edits) and the
runtime wiring.
"""

import random

import pytest
from pydantic import ValidationError

from cardsync.config import Settings
from cardsync.errors import RatingNotSavedError, StorageError
from cardsync.reconcile.cloze import ClozeReconciler
from cardsync.remote.retry import NO_RETRY
from cardsync.runtime import CardSyncRuntime
from cardsync.schemas import MutationType, Selection
from cardsync.srs.constants import Rating
from cardsync.study import StudyService
from cardsync.sync.id_remap import is_temp_id


class ChainSpy:
    def __init__(self):
        self.rated = []

    async def on_rated(self, card, rating):
        self.rated.append((card.id, rating))


@pytest.fixture
def chains():
    return ChainSpy()


@pytest.fixture
def service(store, queue_manager, chains, notices):
    return StudyService(
        store, queue_manager, cloze=ClozeReconciler(store, queue_manager),
        chains=chains, notifier=notices.append,
    )


@pytest.fixture
async def deck(make_deck):
    return await make_deck(name="Dutch", order_mode="created", shuffle_new=False)


def upserts(store):
    return [m for m in store.queue if m.type == MutationType.CARD_UPSERT]


# =============================================================================
# Sessions and ratings
# =============================================================================


class TestSession:
    async def test_rate_persists_and_enqueues(self, service, store, chains, make_card, deck):
        first = await make_card(deck, "c1")
        await make_card(deck, "c2")
        session = await service.start_session([deck.id], rng=random.Random(0))

        assert [item.card_id for item in session.card_queue] == ["c1", "c2"]
        card, reversed_ = await service.current_card()
        assert card is first and reversed_ is False

        await service.rate("good")

        assert len(first.review_history) == 1
        assert first.learning.state == "learning"
        assert store.session.current_index == 1
        assert store.session.rating_counts["good"] == 1
        [queued] = upserts(store)
        assert queued.entity_id == "c1" and queued.reason == "rating"
        assert chains.rated == [("c1", Rating.GOOD)]

        await store.load()
        assert len(store.cards["c1"].review_history) == 1
        assert store.session.current_index == 1

    async def test_preview_leaves_scheduling_untouched(self, service, store, chains, make_card, deck):
        card = await make_card(deck)
        session = await service.start_session([deck.id], include_non_due=True)
        assert session.preview is True

        await service.rate(Rating.EASY)

        assert card.review_history == []
        assert card.is_new
        assert store.queue == []
        assert chains.rated == []
        assert store.session.rating_counts["easy"] == 1

    async def test_failed_write_rolls_back(self, service, store, notices, make_card, deck, monkeypatch):
        card = await make_card(deck)
        await service.start_session([deck.id])

        async def broken_save(_card):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "save_card", broken_save)
        with pytest.raises(RatingNotSavedError):
            await service.rate(Rating.GOOD)

        assert card.review_history == []
        assert card.learning.state == "new"
        assert store.session.current_index == 0
        assert store.queue == []
        assert any("Could not save" in n for n in notices)

    async def test_deleted_cards_are_skipped(self, service, store, make_card, deck):
        await make_card(deck, "c1")
        second = await make_card(deck, "c2")
        await service.start_session([deck.id])

        await store.remove_cards(["c1"])

        card, _ = await service.current_card()
        assert card is second
        assert store.session.skipped == ["c1"]

    async def test_undo_restores_card_and_session(self, service, store, make_card, deck):
        card = await make_card(deck)
        await service.start_session([deck.id])
        await service.rate(Rating.AGAIN)

        assert await service.undo_last_rating() is True

        assert card.review_history == []
        assert card.learning.state == "new"
        assert store.session.current_index == 0
        assert store.session.rating_counts["again"] == 0
        assert upserts(store)[-1].reason == "undo"
        assert await service.undo_last_rating() is False

    async def test_completion_summary(self, service, store, make_card, deck):
        for _ in range(3):
            await make_card(deck)
        await service.start_session([deck.id])

        assert await service.acknowledge_completion() is None
        await service.rate(Rating.GOOD)
        await service.advance()
        await service.rate(Rating.HARD)
        assert await service.current_card() is None

        summary = await service.acknowledge_completion()
        assert summary["reviewed"] == 2
        assert summary["skipped"] == 1
        assert summary["good"] == 1 and summary["hard"] == 1
        assert store.session is None

    async def test_nothing_to_study(self, service, notices, deck):
        assert await service.start_session([deck.id]) is None
        assert notices == ["No cards to study right now"]

    async def test_selection_is_the_default_deck_list(self, service, store, make_deck, make_card):
        chosen = await make_deck()
        other = await make_deck()
        await make_card(chosen)
        await make_card(other)
        await store.save_selection(Selection(study_deck_ids=[chosen.id]))

        session = await service.start_session()
        assert session.deck_ids == [chosen.id]
        assert len(session.card_queue) == 1


# =============================================================================
# Edits
# =============================================================================


class TestEdits:
    async def test_create_cloze_card_derives_sub_cards(self, service, store, deck):
        card = await service.create_card(deck.id, "{{c1::Ik}} {{c2::ben}} moe", card_type="cloze", tags=["verbs"])

        assert is_temp_id(card.id)
        children = store.sub_cards_of(card.id)
        assert [c.cloze_index for c in children] == [1, 2]
        assert card.sub_cards == [c.id for c in children]
        assert card.tags[0].name == "verbs"
        assert {m.entity_id for m in upserts(store)} == {card.id} | {c.id for c in children}

    async def test_create_card_in_unknown_deck(self, service):
        with pytest.raises(KeyError):
            await service.create_card("missing", "front")

    async def test_invalid_edit_is_rejected(self, service, store, make_card, deck):
        card = await make_card(deck)
        with pytest.raises(ValidationError):
            await service.update_card(card.id, type="bogus")
        assert store.queue == []

    async def test_update_card_enqueues_upsert(self, service, store, make_card, deck):
        card = await make_card(deck)
        updated = await service.update_card(card.id, back="moe")

        assert store.cards[card.id].back == "moe"
        assert updated is not card
        assert [m.entity_id for m in upserts(store)] == [card.id]

    async def test_delete_cloze_parent_cascades(self, service, store, deck):
        parent = await service.create_card(deck.id, "{{c1::Ik}} {{c2::ben}}", card_type="cloze")
        child_ids = list(parent.sub_cards)

        removed = await service.delete_card(parent.id)

        assert set(removed) == {parent.id, *child_ids}
        assert not any(i in store.cards for i in removed)
        assert upserts(store) == []
        deletes = {m.entity_id for m in store.queue if m.type == MutationType.CARD_DELETE}
        assert deletes == set(removed)

    async def test_delete_sub_card_unlinks_parent(self, service, store, deck):
        parent = await service.create_card(deck.id, "{{c1::Ik}} {{c2::ben}}", card_type="cloze")
        first, second = parent.sub_cards

        await service.delete_card(first)

        assert parent.sub_cards == [second]

    async def test_delete_deck(self, service, store, make_card, deck):
        await make_card(deck)
        await make_card(deck)
        await store.save_selection(Selection(study_deck_ids=[deck.id], selected_deck_id=deck.id))

        assert await service.delete_deck(deck.id) == 2

        assert deck.id not in store.decks
        assert store.cards_for_deck(deck.id) == []
        assert [m.type for m in store.queue] == [MutationType.DECK_DELETE.value]
        assert store.selection.study_deck_ids == []
        assert store.selection.selected_deck_id is None

    async def test_update_deck_validates(self, service, make_deck):
        deck = await make_deck()
        with pytest.raises(ValidationError):
            await service.update_deck(deck.id, new_limit=-1)
        updated = await service.update_deck(deck.id, new_limit=5)
        assert updated.new_limit == 5


# =============================================================================
# Runtime
# =============================================================================


async def test_runtime_round_trip(tmp_path, remote):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'rt' / 'cardsync.db'}",
        mongo_uri=None,
        mongo_db_name="cardsync",
        openai_api_key=None,
        generation_model="gpt-4o-mini",
        log_level="WARNING",
    )
    async with CardSyncRuntime(settings, remote=remote, retry_policy=NO_RETRY, pacing=0) as runtime:
        deck = await runtime.study.create_deck("Dutch")
        await runtime.study.create_card(deck.id, "huis", "house")

        result = await runtime.engine.sync_now()

        assert result.push.succeeded == 2
        assert result.pull is not None
        assert not any(is_temp_id(i) for i in runtime.store.decks)
        assert not any(is_temp_id(i) for i in runtime.store.cards)
        assert runtime.store.queue == []
