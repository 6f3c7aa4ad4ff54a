"""Keyed JSON storage backing the display cache and connected accounts."""

import json
import threading
from pathlib import Path


class JsonStore:
    """A key -> JSON value mapping kept in one file.

    With ``path=None`` the store lives in memory only.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: dict = {}
        if self.path is not None and self.path.exists():
            text = self.path.read_text()
            self._data = json.loads(text) if text.strip() else {}

    def get(self, key: str, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2))
        tmp_path.replace(self.path)
