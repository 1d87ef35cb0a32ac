from __future__ import annotations

import json
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class StorageBase(ABC):
    """Sink for finalized entity records."""

    @abstractmethod
    def write(self, record: Dict[str, Any]) -> None:
        """Persist a single record."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


class JsonlStorage(StorageBase):
    """Appends records as JSON Lines (.jsonl) from a background writer thread."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._thread = threading.Thread(target=self._writer, name="jsonl-writer", daemon=True)
        self._thread.start()

    def write(self, record: Dict[str, Any]) -> None:
        """Enqueue a record for background writing."""
        self._queue.put(record)

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                f.write(json.dumps(item, ensure_ascii=False, default=str) + "\n")
                f.flush()


class MemoryStorage(StorageBase):
    """Keeps records in a list; used by tests and embedding programs."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self.closed = False

    def write(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self.records.append(record)

    def close(self) -> None:
        self.closed = True
