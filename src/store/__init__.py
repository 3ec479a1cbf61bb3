"""Content-addressed multi-version store with per-consumer history."""

from .digest import compute_digest
from .history import HistoryRecord, HistoryView
from .store import EntryStatus, Store, StoreEntry

__all__ = [
    "EntryStatus",
    "HistoryRecord",
    "HistoryView",
    "Store",
    "StoreEntry",
    "compute_digest",
]
