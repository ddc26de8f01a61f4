"""Remote store contract, retry policy and the MongoDB implementation."""

from cardsync.remote.base import ListPage, RemoteFilter, RemoteRecord, RemoteStore
from cardsync.remote.retry import NO_RETRY, RetryPolicy

__all__ = [
    "ListPage",
    "RemoteFilter",
    "RemoteRecord",
    "RemoteStore",
    "RetryPolicy",
    "NO_RETRY",
]
