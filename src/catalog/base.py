"""Catalog contract: which versions of a package exist and what they depend on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from errors import UnknownPackage
from versioning.models import DependencySpec, Version


@dataclass(frozen=True)
class CatalogEntry:
    """One published version of a package.

    ``digest`` is an opaque content handle resolved later by the content
    producer; it may be None when the catalog does not know it.
    """

    name: str
    version: Version
    dependencies: FrozenSet[DependencySpec] = field(default_factory=frozenset)
    digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": str(self.version),
            "dependencies": [d.to_dict() for d in sorted(self.dependencies, key=lambda d: d.name)],
            "digest": self.digest,
        }


class Catalog(ABC):
    """Read-only view over available package versions."""

    @abstractmethod
    def versions_of(self, name: str) -> List[Version]:
        """Return available versions of ``name``, newest first.

        Raises:
            UnknownPackage: If the catalog has no entries for ``name``.
        """

    @abstractmethod
    def entry(self, name: str, version: Version) -> CatalogEntry:
        """Return the entry for ``name@version``.

        Raises:
            UnknownPackage: If the name or that version is absent.
        """

    def dependencies_of(self, name: str, version: Version) -> FrozenSet[DependencySpec]:
        """Return the dependency specs declared by ``name@version``."""
        return self.entry(name, version).dependencies

    def has(self, name: str) -> bool:
        """Return True if at least one version of ``name`` exists."""
        try:
            return bool(self.versions_of(name))
        except UnknownPackage:
            return False

    def snapshot(self) -> "Catalog":
        """Return a view that stays consistent for one resolution.

        Immutable catalogs return themselves.
        """
        return self
