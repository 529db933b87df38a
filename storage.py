"""
Key-value stores holding the session archive, the active session and the
tracking flag. Values are JSON-compatible documents; model conversion happens
in the SessionManager.
"""
import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Mapping

from errors import StoreError

logger = logging.getLogger("wikipath.store")

SESSIONS_KEY = "sessions"
CURRENT_SESSION_KEY = "currentSession"
IS_TRACKING_KEY = "isTracking"


class KeyValueStore:
    """Interface shared by the store implementations."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        """Writes every key in one step: either all are stored or none are."""
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """Process-local store. Returns copies so callers cannot alias stored state."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set_many(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            self._data.update(copy.deepcopy(dict(values)))


class JsonFileStore(KeyValueStore):
    """
    Keeps every key in a single JSON document on disk. Writes go to a temporary
    file that replaces the document, so a failed write leaves the previous
    contents intact.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            raise StoreError(f"Failed to read store {self.path}: {exc}", path=str(self.path)) from exc
        if not isinstance(data, dict):
            raise StoreError(f"Store {self.path} does not contain a JSON object", path=str(self.path))
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, ensure_ascii=False, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to write store {self.path}: {exc}", path=str(self.path)) from exc

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set_many(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data.update(values)
            self._write(data)
        logger.debug("Wrote keys %s to %s", sorted(values), self.path)


def initialize_storage(store: KeyValueStore) -> None:
    """Seeds the archive and the tracking flag on first run."""
    defaults: Dict[str, Any] = {}
    if store.get(SESSIONS_KEY) is None:
        defaults[SESSIONS_KEY] = []
    if store.get(IS_TRACKING_KEY) is None:
        defaults[IS_TRACKING_KEY] = True
    if defaults:
        store.set_many(defaults)
        logger.info("Initialized storage defaults: %s", sorted(defaults))
