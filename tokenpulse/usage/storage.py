"""
tokenpulse - History Storage

Minimal keyed string store used to persist daily usage records.

- InMemoryStore: process-local, for tests and degraded operation
- JsonFileStore: one JSON object per file; writes go to a temp file that is
  atomically renamed over the original
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from ..core.errors import StorageError
from ..observability.logging import get_logger


logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Durable keyed store for serialized values."""

    @abstractmethod
    def load(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def save(self, key: str, value: str):
        """Store ``value`` under ``key``, replacing any previous value."""


class InMemoryStore(KeyValueStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def load(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def save(self, key: str, value: str):
        self._data[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._data


class JsonFileStore(KeyValueStore):
    """
    Keys and values kept in a single JSON object file.

    Raises:
        StorageError: the file exists but cannot be read or parsed, or a
            write fails
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[str]:
        value = self._read_all().get(key)
        return None if value is None else str(value)

    def save(self, key: str, value: str):
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)
        logger.debug("Saved history", path=str(self.path), key=key, size=len(value))

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError("load", str(self.path), str(e)) from e
        if not isinstance(data, dict):
            raise StorageError("load", str(self.path), "top-level value is not an object")
        return data

    def _write_all(self, data: Dict[str, str]):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".json.tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(temp_path, self.path)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            raise StorageError("save", str(self.path), str(e)) from e

    def __repr__(self) -> str:
        return f"JsonFileStore(path={str(self.path)!r})"
