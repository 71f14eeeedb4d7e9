"""
Local durable storage.

A key-value store for the persisted state blob. `set` is atomic: the value
is written to a temporary file in the same directory and moved into place,
so a reader sees either the old blob or the new one, never a partial file.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from core.config import settings

logger = logging.getLogger(__name__)


class LocalStorage(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...


class JsonFileStorage(LocalStorage):
    """One JSON file per key under `directory`."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or settings.LOCAL_STATE_DIR
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read local state {path}: {e}")
            return None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass


class InMemoryStorage(LocalStorage):
    """Process-local storage; values are copied through JSON like the file store."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
