"""Persistence collaborators for conversation history.

The engine never reaches for storage on its own. A host injects one of these
stores into the session adapter, which calls ``load`` once and ``save`` after
every sealed history change.
"""

from __future__ import annotations

import json
import logging
import time
from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from .settings import _SETTINGS_DIR

__all__ = ["HistoryStore", "MemoryHistoryStore", "JsonHistoryStore"]

LOGGER = logging.getLogger(__name__)
_HISTORY_FILENAME = "chat_history.json"
_HISTORY_VERSION = 1


@runtime_checkable
class HistoryStore(Protocol):
    def load(self) -> dict[str, Any] | None:
        ...

    def save(self, snapshot: Mapping[str, Any]) -> None:
        ...


class MemoryHistoryStore:
    """Keeps the last snapshot in memory; handy for tests and ephemeral sessions."""

    def __init__(self, snapshot: Mapping[str, Any] | None = None) -> None:
        self._snapshot = deepcopy(dict(snapshot)) if snapshot is not None else None
        self.save_count = 0

    def load(self) -> dict[str, Any] | None:
        return deepcopy(self._snapshot) if self._snapshot is not None else None

    def save(self, snapshot: Mapping[str, Any]) -> None:
        self._snapshot = deepcopy(dict(snapshot))
        self.save_count += 1


class JsonHistoryStore:
    """Stores the snapshot as a JSON file, written atomically."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or (_SETTINGS_DIR / _HISTORY_FILENAME)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            LOGGER.warning("History file %s is not valid JSON: %s", self._path, exc)
            return None
        if not isinstance(data, Mapping) or not isinstance(data.get("snapshot"), Mapping):
            LOGGER.warning("History file %s has an unexpected shape; ignoring", self._path)
            return None
        return dict(data["snapshot"])

    def save(self, snapshot: Mapping[str, Any]) -> None:
        payload = {
            "version": _HISTORY_VERSION,
            "timestamp": int(time.time() * 1000),
            "snapshot": dict(snapshot),
        }
        body = json.dumps(payload, indent=2, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Chat history saved to %s", self._path)

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
