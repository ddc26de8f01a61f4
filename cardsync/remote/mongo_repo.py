"""
MongoDB remote store.

Decks and cards live in two collections as
{_id, data, archived, updated_at, created_at[, blocks]} documents.
Driver errors are translated into RemoteError statuses so the queue manager
can classify them (connection/timeouts are retryable 5xx, bad requests and
missing documents are permanent 4xx).
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
)

from cardsync.errors import RemoteError, RemoteNotConfiguredError
from cardsync.remote.base import ListPage, RemoteFilter, RemoteRecord
from cardsync.schemas import ensure_utc, utc_now

# Load environment
load_dotenv()

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_DB_NAME = "cardsync"
COLLECTIONS = {"deck": "decks", "card": "cards"}
PAGE_SIZE = 100


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (AutoReconnect, ExecutionTimeout) as e:
        # NetworkTimeout and ServerSelectionTimeoutError are AutoReconnect subclasses
        raise RemoteError(503, f"{action}: {e}") from e
    except DuplicateKeyError as e:
        raise RemoteError(409, f"{action}: {e}") from e
    except OperationFailure as e:
        status = 429 if e.code in (16500, 462) else 400
        raise RemoteError(status, f"{action}: {e}") from e
    except InvalidId as e:
        raise RemoteError(404, f"{action}: {e}") from e
    except PyMongoError as e:
        raise RemoteError(500, f"{action}: {e}") from e


class MongoRemoteStore:
    """
    Remote store backed by a MongoDB database.

    The client is created lazily on first use and reused afterwards.
    """

    def __init__(
        self,
        mongo_uri: Optional[str] = None,
        db_name: Optional[str] = None,
        page_size: int = PAGE_SIZE,
        client: Optional[AsyncMongoClient] = None,
    ):
        self.mongo_uri = mongo_uri or os.getenv("MONGO_URI")
        self.db_name = db_name or os.getenv("MONGO_DB_NAME", DEFAULT_DB_NAME)
        self.page_size = page_size
        self._client = client

    # ---- Connection Management ----

    def _get_client(self) -> AsyncMongoClient:
        if self._client is not None:
            return self._client
        if not self.mongo_uri:
            raise RemoteNotConfiguredError("MONGO_URI not found in environment variables")
        self._client = AsyncMongoClient(
            self.mongo_uri,
            tz_aware=True,
            maxPoolSize=10,
            minPoolSize=0,
            maxIdleTimeMS=60000,
            serverSelectionTimeoutMS=10000,
        )
        return self._client

    def _collection(self, kind: str):
        try:
            name = COLLECTIONS[kind]
        except KeyError:
            raise RemoteError(400, f"Unknown record kind: {kind}")
        return self._get_client()[self.db_name][name]

    async def ensure_indexes(self) -> None:
        for kind in COLLECTIONS:
            with _translate_errors(f"index {kind}"):
                await self._collection(kind).create_index([("updated_at", ASCENDING)])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ---- Record Operations ----

    async def list_records(
        self,
        kind: str,
        record_filter: RemoteFilter,
        cursor: Optional[str] = None,
    ) -> ListPage:
        query: dict = {}
        if not record_filter.include_archived:
            query["archived"] = {"$ne": True}
        if record_filter.modified_since is not None:
            query["updated_at"] = {"$gte": record_filter.modified_since}
        if record_filter.deck_ids is not None:
            query["data.deck_id"] = {"$in": list(record_filter.deck_ids)}

        with _translate_errors(f"list {kind}"):
            if cursor:
                query["_id"] = {"$gt": ObjectId(cursor)}
            docs = await (
                self._collection(kind)
                .find(query)
                .sort("_id", ASCENDING)
                .limit(self.page_size + 1)
                .to_list(length=self.page_size + 1)
            )

        has_more = len(docs) > self.page_size
        docs = docs[: self.page_size]
        records = [
            RemoteRecord(
                id=str(doc["_id"]),
                data=doc.get("data") or {},
                archived=bool(doc.get("archived", False)),
                updated_at=ensure_utc(doc.get("updated_at")),
            )
            for doc in docs
        ]
        next_cursor = records[-1].id if has_more and records else None
        return ListPage(records=records, next_cursor=next_cursor, has_more=has_more)

    async def create(self, kind: str, payload: dict) -> str:
        now = utc_now()
        with _translate_errors(f"create {kind}"):
            result = await self._collection(kind).insert_one(
                {"data": payload, "archived": False, "created_at": now, "updated_at": now}
            )
        logger.debug(f"Created remote {kind} {result.inserted_id}")
        return str(result.inserted_id)

    async def update(self, kind: str, record_id: str, payload: dict) -> None:
        with _translate_errors(f"update {kind}"):
            result = await self._collection(kind).update_one(
                {"_id": ObjectId(record_id)},
                {"$set": {"data": payload, "updated_at": utc_now()}},
            )
        if result.matched_count == 0:
            raise RemoteError(404, f"update {kind}: {record_id} not found")

    async def archive(self, kind: str, record_id: str) -> None:
        with _translate_errors(f"archive {kind}"):
            result = await self._collection(kind).update_one(
                {"_id": ObjectId(record_id)},
                {"$set": {"archived": True, "updated_at": utc_now()}},
            )
        if result.matched_count == 0:
            # Already gone counts as archived
            logger.info(f"archive {kind}: {record_id} not found, treating as archived")

    async def append_blocks(self, record_id: str, blocks: list[dict]) -> None:
        with _translate_errors("append blocks"):
            result = await self._collection("card").update_one(
                {"_id": ObjectId(record_id)},
                {"$push": {"blocks": {"$each": blocks}}, "$set": {"updated_at": utc_now()}},
            )
        if result.matched_count == 0:
            raise RemoteError(404, f"append blocks: card {record_id} not found")
