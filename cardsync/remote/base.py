"""
Remote store contract.

The sync engine only needs four record operations (list with filter and
pagination, create, update, archive) plus appending content blocks to a
card. Failures must surface as RemoteError with an HTTP-like status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol


@dataclass
class RemoteFilter:
    """Server-side filter for list calls."""
    modified_since: Optional[datetime] = None
    include_archived: bool = False
    deck_ids: Optional[list[str]] = None  # cards only


@dataclass
class RemoteRecord:
    """One record as returned by list(); `data` is the mapped payload."""
    id: str
    data: dict
    archived: bool = False
    updated_at: Optional[datetime] = None


@dataclass
class ListPage:
    records: list[RemoteRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class RemoteStore(Protocol):
    """Remote collaborator. `kind` is "deck" or "card"."""

    async def list_records(
        self,
        kind: str,
        record_filter: RemoteFilter,
        cursor: Optional[str] = None,
    ) -> ListPage:
        ...

    async def create(self, kind: str, payload: dict) -> str:
        """Create a record and return its new opaque id."""
        ...

    async def update(self, kind: str, record_id: str, payload: dict) -> None:
        ...

    async def archive(self, kind: str, record_id: str) -> None:
        """Soft-delete a record."""
        ...

    async def append_blocks(self, record_id: str, blocks: list[dict]) -> None:
        """Append content blocks (rich body content) to a card."""
        ...
