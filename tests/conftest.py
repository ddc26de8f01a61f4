import itertools
import json
import os
from datetime import datetime
from typing import Optional

import pytest

# Set test environment variables
os.environ["TEST_MODE"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("OPENAI_API_KEY", None)

from cardsync.errors import RemoteError  # noqa: E402
from cardsync.remote.base import ListPage, RemoteFilter, RemoteRecord  # noqa: E402
from cardsync.remote.retry import NO_RETRY  # noqa: E402
from cardsync.schemas import Card, Deck, utc_now  # noqa: E402
from cardsync.storage.local_store import LocalStore  # noqa: E402
from cardsync.sync.id_remap import new_temp_id  # noqa: E402
from cardsync.sync.queue_manager import QueueManager  # noqa: E402


class FakeRemoteStore:
    """In-memory remote store with scriptable failures."""

    def __init__(self, page_size: int = 50):
        self.page_size = page_size
        self.records: dict[str, dict[str, dict]] = {"deck": {}, "card": {}}
        self.blocks: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = {}
        self._counter = 0

    def seed(self, kind: str, record_id: str, data: dict, archived: bool = False,
             updated_at: Optional[datetime] = None) -> None:
        self.records[kind][record_id] = {
            "data": dict(data),
            "archived": archived,
            "updated_at": updated_at or utc_now(),
        }

    def touch(self, kind: str, record_id: str, **changes) -> None:
        record = self.records[kind][record_id]
        archived = changes.pop("archived", None)
        if archived is not None:
            record["archived"] = archived
        record["data"].update(changes)
        record["updated_at"] = utc_now()

    def fail_next(self, op: str, *errors: Exception) -> None:
        self.failures.setdefault(op, []).extend(errors)

    def _maybe_fail(self, op: str) -> None:
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    async def list_records(self, kind, record_filter: RemoteFilter, cursor=None) -> ListPage:
        self.calls.append(("list", kind))
        self._maybe_fail("list")
        items = []
        for record_id, record in sorted(self.records[kind].items()):
            if record["archived"] and not record_filter.include_archived:
                continue
            if record_filter.modified_since and record["updated_at"] < record_filter.modified_since:
                continue
            if record_filter.deck_ids is not None and record["data"].get("deck_id") not in record_filter.deck_ids:
                continue
            items.append(RemoteRecord(
                id=record_id,
                data=json.loads(json.dumps(record["data"])),
                archived=record["archived"],
                updated_at=record["updated_at"],
            ))
        start = int(cursor or 0)
        end = start + self.page_size
        has_more = end < len(items)
        return ListPage(records=items[start:end], next_cursor=str(end) if has_more else None, has_more=has_more)

    async def create(self, kind, payload) -> str:
        self._maybe_fail("create")
        self._counter += 1
        record_id = f"{kind}-{self._counter}"
        self.seed(kind, record_id, payload)
        self.calls.append(("create", kind, record_id))
        return record_id

    async def update(self, kind, record_id, payload) -> None:
        self._maybe_fail("update")
        if record_id not in self.records[kind]:
            raise RemoteError(404, f"{kind} {record_id} not found")
        self.seed(kind, record_id, payload)
        self.calls.append(("update", kind, record_id))

    async def archive(self, kind, record_id) -> None:
        self._maybe_fail("archive")
        if record_id in self.records[kind]:
            self.records[kind][record_id]["archived"] = True
            self.records[kind][record_id]["updated_at"] = utc_now()
        self.calls.append(("archive", kind, record_id))

    async def append_blocks(self, record_id, blocks) -> None:
        self._maybe_fail("append_blocks")
        self.blocks.setdefault(record_id, []).extend(blocks)
        self.calls.append(("append_blocks", record_id))


class FakeGenerator:
    """Chain generator returning scripted responses (or a default card)."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return json.dumps({"front": f"Variant {len(self.prompts)}", "back": "answer", "notes": ""})


@pytest.fixture
async def store(tmp_path):
    """Local store on a temporary sqlite file"""
    local = LocalStore(f"sqlite+aiosqlite:///{tmp_path / 'cardsync.db'}")
    await local.open()
    yield local
    await local.close()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def notices():
    return []


@pytest.fixture
def queue_manager(store, remote, notices):
    return QueueManager(store, remote, retry_policy=NO_RETRY, pacing=0, notifier=notices.append)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def make_deck(store):
    """Create and persist a deck (remote id defaults to its id)."""
    counter = itertools.count(1)

    async def _make(deck_id: Optional[str] = None, synced: bool = True, **fields) -> Deck:
        deck_id = deck_id or (f"d{next(counter)}" if synced else new_temp_id())
        deck = Deck(id=deck_id, remote_id=deck_id if synced else None, **fields)
        await store.save_deck(deck)
        return deck

    return _make


@pytest.fixture
def make_card(store):
    """Create and persist a card (remote id defaults to its id)."""
    counter = itertools.count(1)

    async def _make(deck: Deck, card_id: Optional[str] = None, synced: bool = True, **fields) -> Card:
        card_id = card_id or (f"c{next(counter)}" if synced else new_temp_id())
        fields.setdefault("front", f"Front {card_id}")
        card = Card(id=card_id, remote_id=card_id if synced else None, deck_id=deck.id, **fields)
        await store.save_card(card)
        return card

    return _make
