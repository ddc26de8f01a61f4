"""Durable local storage (SQLAlchemy asyncio) and the in-memory record cache."""

from cardsync.storage.local_store import CARD, DECK, LocalStore, parse_timestamp

__all__ = ["LocalStore", "CARD", "DECK", "parse_timestamp"]
