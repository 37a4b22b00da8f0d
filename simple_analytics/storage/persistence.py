"""Persistence stores — a single durable slot for the pending-event snapshot."""

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from simple_analytics.utils.logging import setup_logging

logger = setup_logging("analytics-persistence")

DEFAULT_SLOT_NAME = "PersistedAnalytics"


class PersistenceStore(ABC):
    """
    Durable key-value blob store with one fixed logical slot.

    save() overwrites the slot, load() returns the last saved blob (or None),
    clear() removes it. Callers restoring a snapshot load and then clear, so a
    snapshot is replayed at most once.
    """

    @abstractmethod
    def save(self, blob: bytes) -> None:
        ...

    @abstractmethod
    def load(self) -> Optional[bytes]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class FileStore(PersistenceStore):
    """Keeps the slot as a file, by default in the system temp directory."""

    def __init__(self, directory: str | Path | None = None, name: str = DEFAULT_SLOT_NAME):
        self.directory = Path(directory).expanduser() if directory else Path(tempfile.gettempdir())
        self.name = name

    @property
    def path(self) -> Path:
        return self.directory / self.name

    def save(self, blob: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{self.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.info("snapshot_saved", path=str(self.path), size=len(blob))

    def load(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryStore(PersistenceStore):
    """In-process slot, for tests and hosts without a writable disk."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blob: Optional[bytes] = None

    def save(self, blob: bytes) -> None:
        with self._lock:
            self._blob = bytes(blob)

    def load(self) -> Optional[bytes]:
        with self._lock:
            return self._blob

    def clear(self) -> None:
        with self._lock:
            self._blob = None
