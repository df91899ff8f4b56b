"""Durable key-value blob stores.

The engine persists the thread tree, usage counters and the cooldown
expiry as opaque byte blobs. FileBlobStore keeps one file per key and
uses atomic writes and file locking for data integrity.
"""

import os
import re
import sys
import tempfile
import shutil
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

from ..config.settings import settings


_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class BlobStore(ABC):
    """Minimal durable key-value interface."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Get the blob stored under a key, or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store a blob under a key, replacing any previous value."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""
        pass


class MemoryBlobStore(BlobStore):
    """In-process blob store, used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self.writes = 0

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)
        self.writes += 1

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileBlobStore(BlobStore):
    """Stores each key as a file under a directory.

    Uses atomic writes (temp file + rename) and file locking
    to prevent data corruption from concurrent access.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        """Initialize the blob store.

        Args:
            root: Directory holding one file per key, defaults to the
                app data directory
        """
        self._root = Path(root) if root is not None else settings.app_data_dir
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock_path = self._root / ".lock"

    def _path_for(self, key: str) -> Path:
        return self._root / f"{_SAFE_KEY_RE.sub('_', key)}.blob"

    @contextmanager
    def _file_lock(self):
        """Cross-platform file locking context manager."""
        lock_file = None
        try:
            lock_file = open(self._lock_path, 'w')

            if sys.platform == 'win32':
                import msvcrt
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            else:
                import fcntl
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)

            yield

        finally:
            if lock_file:
                if sys.platform == 'win32':
                    import msvcrt
                    try:
                        msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                    except OSError:
                        pass  # Already unlocked
                else:
                    import fcntl
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

                lock_file.close()

    def _atomic_write(self, path: Path, value: bytes) -> None:
        """Atomically write bytes to a file.

        Uses write-to-temp-then-rename pattern for crash safety.
        """
        temp_fd, temp_path = tempfile.mkstemp(dir=self._root, suffix='.tmp')

        try:
            with os.fdopen(temp_fd, 'wb') as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())

            shutil.move(temp_path, str(path))

        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        with self._file_lock():
            if not path.exists():
                return None
            return path.read_bytes()

    def set(self, key: str, value: bytes) -> None:
        with self._file_lock():
            self._atomic_write(self._path_for(key), value)

    def delete(self, key: str) -> None:
        with self._file_lock():
            try:
                self._path_for(key).unlink()
            except FileNotFoundError:
                pass
