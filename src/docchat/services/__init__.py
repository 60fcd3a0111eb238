"""Service layer helpers (settings, history persistence, session wiring)."""

from .history_store import HistoryStore, JsonHistoryStore, MemoryHistoryStore
from .settings import ChatSettings, SettingsStore

__all__ = ["ChatSettings", "SettingsStore", "HistoryStore", "JsonHistoryStore", "MemoryHistoryStore"]
