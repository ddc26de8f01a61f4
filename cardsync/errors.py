"""
Error types shared across cardsync.

RemoteError carries an HTTP-like status so the queue manager can tell
transient failures (429 and 5xx) from permanent ones.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CardSyncError(Exception):
    """Base class for all cardsync errors."""


class StorageError(CardSyncError):
    """Local durable storage failed to read or write."""


class RemoteError(CardSyncError):
    """A remote store call failed."""

    def __init__(self, status: int, message: str, retry_after: Optional[float] = None):
        super().__init__(f"[{status}] {message}")
        self.status = status
        self.message = message
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class RemoteNotConfiguredError(RemoteError):
    """No remote store is configured (for example MONGO_URI is unset)."""

    def __init__(self, message: str):
        super().__init__(503, message)


class DependencyError(CardSyncError):
    """A mutation cannot run yet because something it references is not synced."""


class GenerationError(CardSyncError):
    """The generation collaborator returned nothing usable."""


class RatingNotSavedError(CardSyncError):
    """A rating could not be persisted and was rolled back."""


class OptimizationCancelled(CardSyncError):
    """Raised inside the optimizer loop when its cancel token fires."""


# ---- User Notices ----

Notifier = Callable[[str], None]


def log_notifier(message: str) -> None:
    """Default notifier: surface user-facing notices through the log."""
    logger.warning(message)
