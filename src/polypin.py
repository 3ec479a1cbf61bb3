"""polypin: multi-version package manager core with per-dependency update policies.

``PackageManager`` wires the pieces together for embedding callers:
manifest specs -> Resolver (sees the consumer's active versions) ->
TransactionCoordinator (stages content, activates once) -> payload paths for
the external linker.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from catalog.base import Catalog
from config import Settings, load_settings
from resolver.engine import Resolver
from resolver.graph import ResolvedGraph
from store.history import HistoryRecord, HistoryView
from store.store import Store, StoreEntry
from transaction.coordinator import TransactionCoordinator, TransactionResult, write_link_manifest
from transaction.producer import ContentProducer
from versioning.models import ChangeKind, DependencySpec, Version
from versioning.parser import specs_from_manifest
from versioning.policy import classify_change

logger = logging.getLogger(__name__)

Roots = Union[Sequence[DependencySpec], Mapping[str, Any]]


@dataclass(frozen=True)
class PlannedChange:
    """How one package would move for a consumer."""

    package: str
    previous: Optional[Version]
    new: Optional[Version]
    kind: ChangeKind

    def __str__(self) -> str:
        return f"{self.package}: {self.previous or '-'} -> {self.new or '-'} ({self.kind.value})"


@dataclass(frozen=True)
class Plan:
    """A resolved graph and its diff against the consumer's active versions."""

    consumer: str
    graph: ResolvedGraph
    changes: List[PlannedChange] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return all(c.kind is ChangeKind.UNCHANGED for c in self.changes)


def diff_versions(current: Mapping[str, Version], target: Mapping[str, Version]) -> List[PlannedChange]:
    """Per-package change kinds between two version assignments."""
    out = []
    for name in sorted(set(current) | set(target)):
        before, after = current.get(name), target.get(name)
        out.append(PlannedChange(name, before, after, classify_change(before, after)))
    return out


class PackageManager:
    """Facade over catalog, resolver, store and coordinator.

    Logging is left to the embedding program; its entry point can call
    ``common.logging_utils.configure_logging(settings.log_level)``.
    """

    def __init__(self, catalog: Catalog, producer: ContentProducer, *,
                 settings: Optional[Settings] = None, store: Optional[Store] = None):
        self.settings = settings or load_settings()
        self.catalog = catalog
        self.producer = producer
        self.store = store or Store.open(self.settings.store_path, self.settings)
        self.resolver = Resolver(
            catalog,
            prefer_active_transitive=self.settings.prefer_active_transitive,
            max_steps=self.settings.max_resolution_steps,
        )
        self.coordinator = TransactionCoordinator(self.store, producer)

    def __enter__(self) -> "PackageManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.store.close()

    def _roots(self, roots: Roots, current: Mapping[str, Version]) -> List[DependencySpec]:
        if isinstance(roots, Mapping):
            return specs_from_manifest(roots, current)
        return list(roots)

    def plan(self, roots: Roots, consumer: str) -> Plan:
        """Resolve ``roots`` for ``consumer`` without touching the store."""
        current = self.store.active_versions(consumer)
        graph = self.resolver.resolve(self._roots(roots, current), current)
        return Plan(consumer, graph, diff_versions(current, graph.versions))

    def install(self, roots: Roots, consumer: str, *, cancel: Optional[threading.Event] = None,
                link_manifest: Optional[Union[str, Path]] = None) -> TransactionResult:
        """Resolve, stage and activate ``roots`` for ``consumer``.

        Args:
            roots: Dependency specs, or a manifest mapping of name -> policy.
            consumer: Consumer to update.
            cancel: Optional cancellation event.
            link_manifest: Where to write the package -> path mapping.
        """
        plan = self.plan(roots, consumer)
        for change in plan.changes:
            if change.kind is not ChangeKind.UNCHANGED:
                logger.info("%s: %s", consumer, change)
        result = self.coordinator.apply(plan.graph, consumer, cancel=cancel)
        if link_manifest is not None:
            write_link_manifest(link_manifest, result)
        return result

    def rollback(self, consumer: str, name: str, to_version: Version,
                 digest: Optional[str] = None) -> Optional[HistoryRecord]:
        return self.store.rollback(consumer, name, to_version, digest=digest)

    def history(self, name: Optional[str] = None, consumer: Optional[str] = None) -> HistoryView:
        return self.store.history(name=name, consumer=consumer)

    def active(self, consumer: str) -> Dict[str, Version]:
        return self.store.active_versions(consumer)

    def paths(self, consumer: str) -> Dict[str, Path]:
        return self.store.active_paths(consumer)

    def prune(self, older_than: Optional[float] = None) -> List[StoreEntry]:
        return self.store.prune(older_than)
