"""
Runtime - builds and owns every cardsync component for one process.

Usage:
    runtime = CardSyncRuntime()
    await runtime.open()
    ...
    await runtime.close()
"""

from __future__ import annotations

import logging
from typing import Optional

from cardsync.config import Settings
from cardsync.errors import Notifier, log_notifier
from cardsync.generation import ChainGenerator, OpenAIChainGenerator
from cardsync.reconcile.chains import ChainReconciler
from cardsync.reconcile.cloze import ClozeReconciler
from cardsync.remote.base import RemoteStore
from cardsync.remote.mongo_repo import MongoRemoteStore
from cardsync.remote.retry import RetryPolicy
from cardsync.storage.local_store import LocalStore
from cardsync.study import StudyService
from cardsync.sync.engine import SyncEngine
from cardsync.sync.queue_manager import QueueManager

logger = logging.getLogger(__name__)


class CardSyncRuntime:
    """
    Wires store, remote, queue manager, reconcilers, engine and study service.

    Args:
        settings: Resolved settings (default: Settings.from_env())
        remote: Remote store (default: MongoDB from MONGO_URI)
        generator: Chain generator (default: OpenAI when OPENAI_API_KEY is set)
        notifier: Receives user-facing notices
        retry_policy: Applied to every remote call
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        remote: Optional[RemoteStore] = None,
        generator: Optional[ChainGenerator] = None,
        notifier: Notifier = log_notifier,
        retry_policy: Optional[RetryPolicy] = None,
        **queue_options,
    ):
        self.settings = settings or Settings.from_env()
        self.store = LocalStore(self.settings.database_url)
        self.remote = remote or MongoRemoteStore(self.settings.mongo_uri, self.settings.mongo_db_name)
        if generator is None and self.settings.openai_api_key:
            generator = OpenAIChainGenerator(
                api_key=self.settings.openai_api_key, model=self.settings.generation_model
            )

        self.queue_manager = QueueManager(
            self.store, self.remote, retry_policy=retry_policy, notifier=notifier, **queue_options
        )
        self.cloze = ClozeReconciler(self.store, self.queue_manager)
        self.chains = ChainReconciler(self.store, self.queue_manager, generator, notifier=notifier)
        self.engine = SyncEngine(self.queue_manager, cloze=self.cloze, chains=self.chains, notifier=notifier)
        self.queue_manager.on_enqueue = self.engine.on_enqueue
        self.study = StudyService(
            self.store, self.queue_manager, cloze=self.cloze, chains=self.chains, notifier=notifier
        )

    async def open(self, start_sync: bool = False) -> None:
        """Open the local store; optionally start periodic sync."""
        await self.store.open()
        if start_sync:
            self.engine.start()

    async def close(self) -> None:
        await self.engine.stop()
        close_remote = getattr(self.remote, "close", None)
        if close_remote is not None:
            await close_remote()
        await self.store.close()

    async def reset(self) -> None:
        """DANGEROUS: wipe local records, queue, session and sync markers."""
        await self.engine.stop()
        await self.store.reset()
        logger.warning("Runtime reset: local state wiped")

    async def __aenter__(self) -> "CardSyncRuntime":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
