"""Engine wiring.

Builds the object graph a UI layer talks to: one blob store shared by
usage counters, the cooldown expiry and the thread tree, a quota gate, a
completion dispatcher and the reconciler, with the persistence debouncer
subscribed to tree changes.
"""

import logging
from pathlib import Path
from typing import Optional

from .config.settings import settings
from .llm import create_adapter
from .llm.base_adapter import LLMAdapter
from .llm.dispatcher import CompletionDispatcher
from .orchestrator.quota import BlobUsageStore, CooldownState, QuotaGate, Tier
from .orchestrator.reconciler import ConversationReconciler
from .storage.blob_store import BlobStore, FileBlobStore
from .storage.thread_store import PersistenceDebouncer


LOGGER = logging.getLogger(__name__)


class Engine:
    """The conversation engine for a single user."""

    def __init__(
        self,
        adapter: LLMAdapter,
        store: BlobStore,
        tier: Tier = Tier.FREE,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        """Wire the engine and load persisted state.

        Args:
            adapter: LLM adapter for every provider call
            store: Durable blob store
            tier: Subscription tier used until one is stored
            debounce_seconds: Persistence quiet period, defaults to settings
        """
        self.store = store
        self.usage = BlobUsageStore(store, tier)
        self.cooldown = CooldownState(store)
        self.gate = QuotaGate(self.usage, self.cooldown)
        self.dispatcher = CompletionDispatcher(adapter)
        self.debouncer = PersistenceDebouncer(store, delay=debounce_seconds)
        self.reconciler = ConversationReconciler(self.dispatcher, self.gate)

        saved = self.debouncer.load()
        if saved is not None:
            self.reconciler.restore(saved)
            LOGGER.info("Restored %d threads", len(self.reconciler.tree.threads))

        if self.cooldown.restore():
            LOGGER.info("Provider cooldown still active for %.0f seconds", self.cooldown.remaining)

        self.reconciler.subscribe(self.debouncer)

    @classmethod
    def open(
        cls,
        model_id: Optional[str] = None,
        data_dir: Optional[Path] = None,
        tier: Tier = Tier.FREE,
    ) -> "Engine":
        """Create an engine backed by files in the data directory.

        Registers a synchronous flush for interpreter exit and SIGTERM.

        Args:
            model_id: Model to use, defaults to settings
            data_dir: Storage directory, defaults to settings
            tier: Subscription tier used until one is stored
        """
        adapter = create_adapter(model_id or settings.default_model)
        engine = cls(adapter, FileBlobStore(data_dir), tier)
        engine.debouncer.register_teardown()
        return engine

    def close(self) -> None:
        """Write any pending state now."""
        self.debouncer.flush()
