"""In-memory catalog with immutable snapshots."""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from errors import UnknownPackage
from versioning.models import Version

from .base import Catalog, CatalogEntry


class CatalogSnapshot(Catalog):
    """Frozen catalog view; safe to share between concurrent resolutions."""

    def __init__(self, entries: Mapping[str, Mapping[Version, CatalogEntry]]):
        frozen: Dict[str, Mapping[Version, CatalogEntry]] = {}
        ordered: Dict[str, Tuple[Version, ...]] = {}
        for name, by_version in entries.items():
            if not by_version:
                continue
            frozen[name] = MappingProxyType(dict(by_version))
            ordered[name] = tuple(sorted(by_version, reverse=True))
        self._entries = MappingProxyType(frozen)
        self._ordered = MappingProxyType(ordered)

    def versions_of(self, name: str) -> List[Version]:
        try:
            return list(self._ordered[name])
        except KeyError:
            raise UnknownPackage(name) from None

    def entry(self, name: str, version: Version) -> CatalogEntry:
        by_version = self._entries.get(name)
        if by_version is None or version not in by_version:
            raise UnknownPackage(name if by_version is None else f"{name}@{version}")
        return by_version[version]

    def names(self) -> List[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return sum(len(v) for v in self._entries.values())


class InMemoryCatalog(Catalog):
    """Mutable catalog; resolutions work on ``snapshot()`` copies.

    Entries are immutable once added: re-adding the same name@version with a
    different payload raises ValueError.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[Version, CatalogEntry]] = {}
        self.extend(entries)

    def add(self, entry: CatalogEntry) -> None:
        """Add one entry (idempotent for identical entries)."""
        with self._lock:
            by_version = self._entries.setdefault(entry.name, {})
            existing = by_version.get(entry.version)
            if existing is not None and existing != entry:
                raise ValueError(f"catalog entry {entry.name}@{entry.version} already exists with different content")
            by_version[entry.version] = entry

    def extend(self, entries: Iterable[CatalogEntry]) -> None:
        for entry in entries:
            self.add(entry)

    def snapshot(self) -> CatalogSnapshot:
        with self._lock:
            return CatalogSnapshot(self._entries)

    def versions_of(self, name: str) -> List[Version]:
        with self._lock:
            by_version = self._entries.get(name)
            if not by_version:
                raise UnknownPackage(name)
            return sorted(by_version, reverse=True)

    def entry(self, name: str, version: Version) -> CatalogEntry:
        with self._lock:
            by_version = self._entries.get(name)
            if by_version is None or version not in by_version:
                raise UnknownPackage(name if by_version is None else f"{name}@{version}")
            return by_version[version]
