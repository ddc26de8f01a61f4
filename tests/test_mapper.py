"""
Tests for mapping records to and from remote payloads.
"""

from datetime import datetime, timezone

import pytest

from cardsync.errors import DependencyError
from cardsync.remote.base import RemoteRecord
from cardsync.schemas import Algorithm, Card, Deck, ReviewEntry, SchedulingConfig
from cardsync.sync import mapper
from cardsync.sync.id_remap import new_temp_id

AT = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def decks():
    return {"d1": Deck(id="d1", remote_id="d1", name="Biology")}


class TestHistory:
    def test_compact_form_round_trips_and_dedupes(self):
        entries = [
            ReviewEntry(rating=3, at=AT, ms=1200),
            ReviewEntry(rating=3, at=AT, ms=1200),
            ReviewEntry(rating=1, at=AT, ms=None),
        ]
        compact = mapper.compact_history(entries)
        assert compact.count(",") == 1
        assert compact.startswith("g")

        parsed = mapper.parse_history(compact)
        assert [(e.rating, e.at, e.ms) for e in parsed] == [(3, AT, 1200), (1, AT, 0)]

    def test_malformed_entries_are_skipped(self):
        parsed = mapper.parse_history("x123.0,g,gzz!.1,a1a2b3c.0")
        assert len(parsed) == 1
        assert parsed[0].rating == 1

    @pytest.mark.parametrize("value", [None, "", 42])
    def test_missing_history(self, value):
        assert mapper.parse_history(value) == []


class TestOutgoing:
    def test_card_requires_synced_deck(self):
        decks = {"tmp_d": Deck(id="tmp_d")}
        with pytest.raises(DependencyError):
            mapper.card_to_payload(Card(id="c1", deck_id="tmp_d"), decks)

    def test_temp_links_are_omitted(self, decks):
        temp = new_temp_id()
        card = Card(
            id="c1", deck_id="d1", parent_card=temp, sub_cards=[temp, "c2"],
            dy_root_card="c0", dy_next_card=temp,
        )
        payload = mapper.card_to_payload(card, decks)
        assert payload["parent_card"] is None
        assert payload["sub_cards"] == ["c2"]
        assert payload["dy_root_card"] == "c0"
        assert payload["dy_next_card"] is None
        assert payload["deck_id"] == "d1"

    def test_deck_payload_formats_steps(self):
        deck = Deck(id="d1", algorithm=Algorithm.MEMORY_MODEL,
                    srs_config=SchedulingConfig(learning_steps=["30s", "10m", "1d"]))
        payload = mapper.deck_to_payload(deck)
        assert payload["srs_config"]["learning_steps"] == ["30s", "10m", "1d"]
        assert payload["algorithm"] == "memory-model"
        assert len(payload["srs_config"]["memory"]["weights"]) == 21


class TestIncoming:
    def test_unknown_deck_is_skipped(self, decks):
        record = RemoteRecord(id="c1", data={"deck_id": "elsewhere", "front": "x"})
        assert mapper.card_from_remote(record, decks) is None

    def test_invalid_state_block_falls_back(self, decks):
        record = RemoteRecord(id="c1", data={
            "deck_id": "d1",
            "srs_state": {"sm2": {"ease_factor": "very easy"}},
        })
        card = mapper.card_from_remote(record, decks)
        assert card.srs_state_error is True
        assert card.sm2.ease_factor == 2.5

    def test_new_card_with_history_becomes_review(self, decks):
        record = RemoteRecord(id="c1", data={
            "deck_id": "d1",
            "srs_state": {"learning": {"state": "new"}},
            "review_history": "g1a2b3c.0",
        })
        card = mapper.card_from_remote(record, decks)
        assert card.learning.state == "review"
        assert len(card.review_history) == 1

    def test_leech_forces_suspended(self, decks):
        record = RemoteRecord(id="c1", data={"deck_id": "d1", "leech": True, "suspended": False})
        card = mapper.card_from_remote(record, decks)
        assert card.leech is True
        assert card.suspended is True

    def test_invalid_deck_config_is_flagged(self):
        record = RemoteRecord(id="d9", data={"name": "Broken", "srs_config": {"learning_steps": ["soon"]}})
        deck = mapper.deck_from_remote(record)
        assert deck.srs_config_error is True
        assert deck.srs_config == SchedulingConfig()
        assert deck.name == "Broken"
        assert deck.remote_id == "d9"

    def test_payload_round_trip_keeps_scheduling(self, decks):
        card = Card(id="c1", deck_id="d1", front="cell", tags=[{"name": "bio"}])
        card.review_history.append(ReviewEntry(rating=4, at=AT, ms=900))
        card.learning.state = "review"
        card.sm2.interval = 6
        payload = mapper.card_to_payload(card, decks)

        restored = mapper.card_from_remote(RemoteRecord(id="c1", data=payload), decks)
        assert restored.front == "cell"
        assert restored.tags[0].name == "bio"
        assert restored.sm2.interval == 6
        assert restored.review_history[0].ms == 900
