"""Debounced persistence of the thread tree.

The debouncer subscribes to tree-change events and writes the whole tree
to a blob store after a short quiet period, coalescing bursts of
mutations (stream deltas, panel updates) into one write.

Does NOT:
- Mutate the thread tree
- Decide what changed (every event re-serializes the full tree)
"""

import asyncio
import atexit
import json
import logging
import signal
from typing import Optional

from . import ThreadTree, TreeEvent
from .blob_store import BlobStore
from ..config.settings import settings


LOGGER = logging.getLogger(__name__)


class PersistenceDebouncer:
    """Serializes the thread tree to a blob store on a trailing debounce.

    Write failures are logged and the tree stays dirty, so the next
    mutation retries the write.
    """

    def __init__(
        self,
        store: BlobStore,
        key: Optional[str] = None,
        delay: Optional[float] = None,
        warning_bytes: Optional[int] = None,
    ) -> None:
        """Initialize the debouncer.

        Args:
            store: Blob store receiving serialized trees
            key: Storage key, defaults to settings
            delay: Quiet period in seconds before writing
            warning_bytes: Soft size threshold for the warning
        """
        self._store = store
        self._key = key or settings.conversations_key
        self._delay = settings.persist_debounce_seconds if delay is None else delay
        self._warning_bytes = warning_bytes or settings.storage_warning_bytes
        self._tree: Optional[ThreadTree] = None
        self._dirty = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._teardown_registered = False
        self.write_count = 0

    @property
    def is_dirty(self) -> bool:
        """Whether a write is pending."""
        return self._dirty

    def __call__(self, event: TreeEvent) -> None:
        """Tree-change subscriber entry point."""
        self.schedule(event.tree)

    def load(self) -> Optional[ThreadTree]:
        """Load the persisted tree.

        Returns:
            ThreadTree instance, or None if nothing valid is stored
        """
        raw = self._store.get(self._key)
        if raw is None:
            return None

        try:
            return ThreadTree.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            LOGGER.error("Stored conversations are unreadable, starting fresh: %s", e)
            return None

    def schedule(self, tree: ThreadTree) -> None:
        """Schedule a write of the tree after the quiet period.

        Each call restarts the timer. Without a running event loop the
        write happens immediately.
        """
        self._tree = tree
        self._dirty = True

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return

        self._handle = loop.call_later(self._delay, self.flush)

    def flush(self) -> bool:
        """Write the pending tree now.

        Returns:
            True if a write happened
        """
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        if not self._dirty or self._tree is None:
            return False

        payload = self.serialize(self._tree)
        if len(payload) > self._warning_bytes:
            LOGGER.warning(
                "Stored conversations are getting large: %.2f MB. "
                "Consider a database-backed store.",
                len(payload) / 1024 / 1024,
            )

        try:
            self._store.set(self._key, payload)
        except Exception:
            LOGGER.exception("Failed to persist conversations; will retry on next change")
            return False

        self._dirty = False
        self.write_count += 1
        return True

    @staticmethod
    def serialize(tree: ThreadTree) -> bytes:
        """Serialize a tree to UTF-8 JSON bytes."""
        return json.dumps(tree.to_dict(), ensure_ascii=False).encode("utf-8")

    def register_teardown(self) -> None:
        """Flush synchronously at interpreter exit and on SIGTERM."""
        if self._teardown_registered:
            return
        self._teardown_registered = True
        atexit.register(self.flush)

        try:
            previous = signal.getsignal(signal.SIGTERM)

            def _on_sigterm(signum, frame):
                self.flush()
                signal.signal(signum, previous)
                if callable(previous):
                    previous(signum, frame)
                else:
                    signal.raise_signal(signum)

            signal.signal(signal.SIGTERM, _on_sigterm)
        except ValueError:
            # Not the main thread; atexit still covers normal shutdown
            LOGGER.debug("SIGTERM handler not installed outside main thread")
