"""
Small persistent key-value store for crash recovery counters.

Values live in a JSON file so they survive process restarts. Writes are
best-effort: a failed write is logged and the in-memory value is kept.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, Optional


class PreferenceStore:
    """Thread-safe JSON-backed preferences. Pass path=None for memory only."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._loaded = False

    def load(self) -> None:
        """(Re)read values from disk."""
        with self._lock:
            self._load_locked()

    def _load_locked(self) -> None:
        self._loaded = True
        if not self.path:
            return
        self._values = {}
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._values = data
            else:
                logging.warning(f"Ignoring malformed preferences file {self.path}")
        except (OSError, ValueError) as e:
            logging.warning(f"Could not read preferences from {self.path}: {e}")

    def _ensure_loaded(self) -> None:
        with self._lock:
            if not self._loaded:
                self._load_locked()

    def get_int(self, key: str, default: int = 0) -> int:
        self._ensure_loaded()
        with self._lock:
            value = self._values.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def put(self, **values: Any) -> None:
        """Set one or more keys and persist them in a single write."""
        self._ensure_loaded()
        with self._lock:
            self._values.update(values)
            self._write(self._values)

    def increment(self, key: str, by: int = 1, **also: Any) -> int:
        """Atomically increment an integer key, set any extra keys, persist once."""
        self._ensure_loaded()
        with self._lock:
            try:
                current = int(self._values.get(key, 0))
            except (TypeError, ValueError):
                current = 0
            self._values[key] = current + by
            self._values.update(also)
            self._write(self._values)
        return current + by

    def snapshot(self) -> Dict[str, Any]:
        self._ensure_loaded()
        with self._lock:
            return dict(self._values)

    def _write(self, values: Dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump(values, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logging.warning(f"Could not persist preferences to {self.path}: {e}")
