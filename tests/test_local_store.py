"""
Tests for the sqlite-backed local store and its in-memory cache.
"""

import pytest

from cardsync.errors import StorageError
from cardsync.schemas import Card, Deck, Mutation, MutationType, QueueItem, SchedulingConfig, Selection, StudySession
from cardsync.storage.local_store import CARD, DECK, LocalStore, parse_timestamp


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'store.db'}"


class TestRecords:
    async def test_put_and_get_all(self, store):
        await store.put(DECK, {"id": "d1", "name": "Biology"})
        await store.put(DECK, {"id": "d1", "name": "Biology 2"})
        assert await store.get_all(DECK) == [{"id": "d1", "name": "Biology 2"}]

    async def test_put_many_spans_batches(self, store):
        store.batch_size = 3
        written = await store.put_many(CARD, [{"id": f"c{i}", "deck_id": "d1"} for i in range(10)])
        assert written == 10
        assert len(await store.get_all(CARD)) == 10

    async def test_record_without_id_rejected(self, store):
        with pytest.raises(StorageError):
            await store.put(CARD, {"front": "no id"})

    async def test_delete_many(self, store):
        await store.put_many(CARD, [{"id": f"c{i}"} for i in range(3)])
        await store.delete_many(CARD, ["c0", "c2"])
        assert await store.get_all(CARD) == [{"id": "c1"}]

    async def test_closed_store_raises_storage_error(self, db_url):
        local = LocalStore(db_url)
        with pytest.raises(StorageError):
            await local.get_meta("anything")


class TestMeta:
    async def test_set_get_and_clear(self, store):
        await store.set_meta("last_pull", "2024-01-01T00:00:00+00:00")
        assert await store.get_meta("last_pull") == "2024-01-01T00:00:00+00:00"
        await store.set_meta("last_pull", None)
        assert await store.get_meta("last_pull", "missing") == "missing"

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-01-01T00:00:00Z").year == 2024
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None


class TestMutations:
    async def test_append_assigns_increasing_ids(self, store):
        first = await store.append_mutation(Mutation(type=MutationType.CARD_UPSERT, entity_id="c1"))
        second = await store.append_mutation(Mutation(type=MutationType.CARD_DELETE, entity_id="c2"))
        assert first.id < second.id
        assert [m.entity_id for m in store.queue] == ["c1", "c2"]

    async def test_replace_removes_superseded(self, store):
        old = await store.append_mutation(Mutation(type=MutationType.CARD_UPSERT, entity_id="c1"))
        new = await store.replace_mutation([old.id], Mutation(type=MutationType.CARD_DELETE, entity_id="c1"))
        persisted = await store.list_mutations()
        assert [m.id for m in persisted] == [new.id]
        assert persisted[0].type == MutationType.CARD_DELETE

    async def test_update_and_remove(self, store):
        mutation = await store.append_mutation(Mutation(type=MutationType.DECK_UPSERT, entity_id="d1"))
        mutation.retry_count = 2
        mutation.parked = True
        mutation.last_error = "[400] bad request"
        await store.update_mutation(mutation)

        persisted = (await store.list_mutations())[0]
        assert persisted.retry_count == 2
        assert persisted.parked is True

        await store.remove_mutation(mutation.id)
        assert await store.list_mutations() == []
        assert store.queue == []

    async def test_derived_jobs_do_not_protect_entities(self, store):
        await store.append_mutation(Mutation(type=MutationType.CARD_UPSERT, entity_id="c1"))
        await store.append_mutation(Mutation(type=MutationType.DERIVED_GENERATION_JOB, entity_id="c2"))
        assert store.pending_entity_ids() == {"c1"}


class TestCache:
    async def test_cache_survives_reopen(self, db_url):
        local = LocalStore(db_url)
        await local.open()
        await local.save_deck(Deck(id="d1", name="Biology"))
        await local.save_cards([
            Card(id="c1", deck_id="d1"),
            Card(id="c2", deck_id="d1", parent_card="c1", cloze_index=1),
        ])
        await local.append_mutation(Mutation(type=MutationType.CARD_UPSERT, entity_id="c1"))
        await local.save_session(StudySession(id="s1", deck_ids=["d1"], card_queue=[QueueItem(card_id="c2")]))
        await local.save_selection(Selection(study_deck_ids=["d1"]))
        await local.close()

        reopened = LocalStore(db_url)
        await reopened.open()
        try:
            assert reopened.decks["d1"].name == "Biology"
            assert set(reopened.cards) == {"c1", "c2"}
            assert [c.id for c in reopened.sub_cards_of("c1")] == ["c2"]
            assert len(reopened.queue) == 1
            assert reopened.session.card_queue[0].card_id == "c2"
            assert reopened.selection.study_deck_ids == ["d1"]
        finally:
            await reopened.close()

    async def test_unreadable_records_are_skipped(self, store):
        await store.put(CARD, {"id": "broken"})  # no deck_id
        await store.put(CARD, {"id": "c1", "deck_id": "d1"})
        await store.load()
        assert set(store.cards) == {"c1"}

    async def test_malformed_deck_config_falls_back_to_defaults(self, store):
        await store.put(DECK, {"id": "d1", "name": "Biology", "srs_config": {"easy_days": [9]}})
        await store.put(CARD, {"id": "c1", "deck_id": "d1"})
        await store.load()

        deck = store.decks["d1"]
        assert deck.name == "Biology"
        assert deck.srs_config_error is True
        assert deck.srs_config == SchedulingConfig()
        assert [c.id for c in store.cards_for_deck("d1")] == ["c1"]

    async def test_malformed_card_state_falls_back_to_defaults(self, store):
        await store.put(CARD, {
            "id": "c1",
            "deck_id": "d1",
            "front": "huis",
            "learning": {"state": "floating", "step": -2},
            "sm2": {"interval": "soon"},
            "fsrs": "not a block",
        })
        await store.put(CARD, {"id": "c2", "deck_id": "d1", "flag": {"bad": True}})
        await store.load()

        card = store.cards["c1"]
        assert card.front == "huis"
        assert card.srs_state_error is True
        assert card.learning.state == "new"
        assert card.sm2.interval == 0
        assert card.fsrs.stability is None
        assert "c2" in store.cards
        assert store.cards["c2"].srs_state_error is False

    async def test_indexes_follow_saves_and_removals(self, store):
        await store.save_cards([
            Card(id="root", deck_id="d1"),
            Card(id="next", deck_id="d1", dy_root_card="root", dy_prev_card="root"),
        ])
        assert {c.id for c in store.chain_members("root")} == {"root", "next"}

        moved = store.cards["next"].model_copy()
        moved.deck_id = "d2"
        await store.save_card(moved)
        assert [c.id for c in store.cards_for_deck("d2")] == ["next"]
        assert [c.id for c in store.cards_for_deck("d1")] == ["root"]

        await store.remove_cards(["next"])
        assert [c.id for c in store.chain_members("root")] == ["root"]

    async def test_reset_drops_everything(self, store):
        await store.save_deck(Deck(id="d1"))
        await store.append_mutation(Mutation(type=MutationType.DECK_UPSERT, entity_id="d1"))
        await store.reset()
        assert store.decks == {}
        assert store.queue == []
