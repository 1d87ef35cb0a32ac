from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .logs import CrawlLogger
from .records import EntityRecord, empty_entity

DEFAULT_STATE_KEY = "STATE"

UpdateFn = Callable[[EntityRecord], Optional[EntityRecord]]


class KeyValueStore(ABC):
    """Durable named-blob storage used to snapshot the crawl state."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when the key was never set."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Replace the stored value. Last write wins."""


class LocalKeyValueStore(KeyValueStore):
    """One JSON file per key inside a directory; writes are atomic renames."""

    def __init__(self, directory: str) -> None:
        self._directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self._directory, f"{key}.json")

    def get(self, key: str) -> Optional[Any]:
        try:
            with open(self._path(key), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def set(self, key: str, value: Any) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False, default=str)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class HttpKeyValueStore(KeyValueStore):
    """Remote key-value store: GET/PUT ``{base_url}/records/{key}`` with a JSON body."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = 20,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _url(self, key: str) -> str:
        return f"{self._base_url}/records/{key}"

    def get(self, key: str) -> Optional[Any]:
        resp = self._session.get(self._url(key), timeout=self._timeout)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    def set(self, key: str, value: Any) -> None:
        resp = self._session.put(
            self._url(key),
            data=json.dumps(value, ensure_ascii=False, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json; charset=utf-8"},
            timeout=self._timeout,
        )
        resp.raise_for_status()


class _Turnstile:
    """FIFO mutex: holders are served strictly in ticket (arrival) order."""

    def __init__(self) -> None:
        self._cv = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def __enter__(self) -> "_Turnstile":
        with self._cv:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._serving != ticket:
                self._cv.wait()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        with self._cv:
            self._serving += 1
            self._cv.notify_all()


class StateStore:
    """Keyed, mergeable accumulator of EntityRecords shared by all tasks of a run.

    ``append`` runs at most one update per handle at a time, in arrival
    order; different handles proceed in parallel. Each update replaces the
    whole snapshot, so ``read`` never observes a half-written record.

    Callers must keep their update functions additive (see ``records``):
    the store does not check that nested data survives an update.
    """

    def __init__(
        self,
        kv_store: Optional[KeyValueStore] = None,
        key: str = DEFAULT_STATE_KEY,
        default_factory: Callable[[], EntityRecord] = empty_entity,
        logger: Optional[CrawlLogger] = None,
    ) -> None:
        self._kv_store = kv_store
        self._key = key
        self._default_factory = default_factory
        self._logger = logger or CrawlLogger()
        self._state: Dict[str, EntityRecord] = {}
        self._turnstiles: Dict[str, _Turnstile] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    def _turnstile(self, handle: str) -> _Turnstile:
        with self._lock:
            turnstile = self._turnstiles.get(handle)
            if turnstile is None:
                turnstile = self._turnstiles[handle] = _Turnstile()
            return turnstile

    def append(self, handle: str, update_fn: UpdateFn) -> EntityRecord:
        """Apply ``update_fn`` to the current snapshot (or the empty record) and store the result.

        An update returning None leaves the stored value unchanged.
        """
        with self._turnstile(handle):
            current = self.read(handle)
            if current is None:
                current = self._default_factory()
            value = update_fn(current)
            if value is None:
                value = current
            with self._lock:
                self._state[handle] = value
            return value

    def read(self, handle: str) -> Optional[EntityRecord]:
        with self._lock:
            return self._state.get(handle)

    def handles(self) -> List[str]:
        with self._lock:
            return list(self._state)

    def values(self) -> Iterator[EntityRecord]:
        for handle in self.handles():
            value = self.read(handle)
            if value is not None:
                yield value

    def __len__(self) -> int:
        with self._lock:
            return len(self._state)

    def load(self) -> int:
        """Restore a previously persisted snapshot; returns the number of handles restored."""
        if self._kv_store is None:
            return 0
        stored = self._kv_store.get(self._key) or {}
        with self._lock:
            for handle, value in stored.items():
                self._state.setdefault(handle, value)
        if stored:
            self._logger.info("Restored crawl state", handles=len(stored))
        return len(stored)

    def persist(self) -> None:
        if self._kv_store is None:
            return
        with self._persist_lock:
            with self._lock:
                snapshot = dict(self._state)
            self._kv_store.set(self._key, snapshot)
        self._logger.debug("Persisted crawl state", handles=len(snapshot))

    def autopersist(self, interval_secs: float) -> "AutoPersist":
        return AutoPersist(self, interval_secs, self._logger)


class AutoPersist:
    """Persists a StateStore at a fixed interval from a daemon thread."""

    def __init__(self, store: StateStore, interval_secs: float, logger: CrawlLogger) -> None:
        self._store = store
        self._interval = interval_secs
        self._logger = logger
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "AutoPersist":
        self._thread = threading.Thread(target=self._loop, name="state-persist", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._store.persist()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("Periodic state persist failed", error=str(exc))
