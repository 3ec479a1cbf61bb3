"""Install transactions: stage every entry of a resolved graph, then activate.

Staging runs in a small thread pool and is idempotent, so a transaction that
aborts part way leaves only harmless extra entries behind. Nothing touches a
consumer's pointers until the single ``Store.activate`` call at the end.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from common.file_io import write_json_atomic
from common.logging_utils import Timer, extra_context, is_debug_enabled
from errors import ContentUnavailable, TransactionAborted
from resolver.graph import ResolvedGraph
from store.history import HistoryRecord
from store.store import Store, StoreEntry
from versioning.models import Version

from .producer import ContentProducer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a committed transaction."""

    transaction_id: str
    consumer: str
    graph: ResolvedGraph
    records: List[HistoryRecord] = field(default_factory=list)
    staged: List[StoreEntry] = field(default_factory=list)
    paths: Dict[str, Path] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> Dict[str, object]:
        return {
            "transaction_id": self.transaction_id,
            "consumer": self.consumer,
            "packages": {name: str(self.graph.versions[name]) for name in sorted(self.graph.versions)},
            "records": [r.to_dict() for r in self.records],
            "staged": [e.to_dict() for e in self.staged],
            "paths": {name: str(path) for name, path in sorted(self.paths.items())},
        }


class TransactionCoordinator:
    """Drive one graph from staging to activation for one consumer."""

    def __init__(self, store: Store, producer: ContentProducer, *, workers: Optional[int] = None):
        self.store = store
        self.producer = producer
        self.workers = workers or store.settings.staging_workers

    def apply(self, graph: ResolvedGraph, consumer: str, transaction_id: Optional[str] = None,
              cancel: Optional[threading.Event] = None) -> TransactionResult:
        """Stage missing entries and activate ``graph`` for ``consumer``.

        Args:
            graph: Resolved graph to install.
            consumer: Consumer whose active versions change.
            transaction_id: Identifier recorded in history (generated if None).
            cancel: Event checked before each staging and before activation.

        Returns:
            TransactionResult: Records, newly staged entries and payload paths.

        Raises:
            TransactionAborted: Content unavailable, cancellation, lock timeout
                or write failure. No history record is committed.
        """
        txn = transaction_id or uuid.uuid4().hex
        cancel = cancel or threading.Event()
        if cancel.is_set():
            raise TransactionAborted(txn, "cancelled", consumer=consumer)

        with Timer() as t:
            digests, staged = self._stage_all(graph, consumer, txn, cancel)
            if cancel.is_set():
                raise TransactionAborted(txn, "cancelled before activation", consumer=consumer)
            complete = graph.with_digests(digests)
            records = self.store.activate(complete, txn, consumer)

        paths: Dict[str, Path] = {}
        for name in complete.versions:
            entry = self.store.lookup(name, complete.versions[name], complete.digests.get(name))
            if entry is not None:
                paths[name] = entry.payload

        logger.info("Transaction %s for '%s': %d staged, %d changed", txn, consumer, len(staged), len(records))
        if is_debug_enabled(logger):
            logger.debug(
                "Transaction committed",
                extra=extra_context(
                    event="transaction_commit",
                    component="coordinator",
                    action="apply",
                    outcome="success",
                    target=consumer,
                    duration_ms=t.duration_ms(),
                ),
            )
        return TransactionResult(transaction_id=txn, consumer=consumer, graph=complete,
                                 records=records, staged=staged, paths=paths)

    def _stage_all(self, graph: ResolvedGraph, consumer: str, txn: str,
                   cancel: threading.Event) -> Tuple[Dict[str, str], List[StoreEntry]]:
        digests: Dict[str, str] = {}
        todo: List[Tuple[str, Version, Optional[str]]] = []
        for name in graph.topological_order():
            version, digest = graph.versions[name], graph.digests.get(name)
            existing = self.store.lookup(name, version, digest, consumer=consumer)
            if existing is not None:
                digests[name] = existing.digest
            else:
                todo.append((name, version, digest))
        if not todo:
            return digests, []

        failed = threading.Event()

        def stage_one(name: str, version: Version, hint: Optional[str]) -> Optional[StoreEntry]:
            if cancel.is_set() or failed.is_set():
                return None
            try:
                produced = self.producer.produce(name, version, hint)
            except (ContentUnavailable, OSError):
                raise
            except Exception as e:  # pylint: disable=broad-exception-caught
                raise ContentUnavailable(name, version, f"producer failed: {e}") from e
            return self.store.stage(name, version, produced.digest, produced.source)

        staged: List[StoreEntry] = []
        errors: List[Exception] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(stage_one, *item): item for item in todo}
            for future in concurrent.futures.as_completed(futures):
                name, version, _hint = futures[future]
                try:
                    entry = future.result()
                except (ContentUnavailable, OSError) as e:
                    failed.set()
                    errors.append(e)
                    logger.warning("Staging %s@%s failed: %s", name, version, e)
                    continue
                if entry is not None:
                    staged.append(entry)
                    digests[name] = entry.digest

        if errors:
            first = errors[0]
            raise TransactionAborted(
                txn, str(first), package=getattr(first, "package", None), consumer=consumer,
            ) from first
        if cancel.is_set():
            raise TransactionAborted(txn, "cancelled during staging", consumer=consumer)
        staged.sort(key=lambda e: (e.name, e.version))
        return digests, staged


def write_link_manifest(path: Union[str, Path], result: TransactionResult) -> None:
    """Atomically write the package -> payload path mapping for the linker."""
    write_json_atomic(path, {
        "consumer": result.consumer,
        "transaction_id": result.transaction_id,
        "packages": {
            name: {"version": str(result.graph.versions[name]), "path": str(p)}
            for name, p in sorted(result.paths.items())
        },
    })
