"""Transactional content-addressed store.

Entries are immutable directories keyed by (name, version, digest). Which
entry a consumer uses is recorded only in that consumer's append-only history
log; activation and rollback append to it under a per-consumer lock, so two
consumers can hold different versions of the same package at the same time.
"""
from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple, Union

from common.file_io import (
    LockTimeout,
    file_lock,
    fsync_dir,
    read_json,
    utc_timestamp,
    write_json_atomic,
)
from common.logging_utils import Timer, extra_context, is_debug_enabled
from config import Settings
from constants import Constants
from errors import ContentUnavailable, TransactionAborted, VersionUnavailable
from versioning.models import Version

from .digest import Source, compute_digest
from .history import ConsumerState, EntryKey, HistoryLog, HistoryRecord, HistoryView
from .layout import StoreLayout, parse_digest

logger = logging.getLogger(__name__)

STG = f"{Constants.STORE} "


class EntryStatus(Enum):
    """Lifecycle status of a store entry, derived from the history logs."""
    STAGED = "staged"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class StoreEntry:
    """An immutable staged package version."""

    name: str
    version: Version
    digest: str
    path: Path
    installed_at: str
    referrers: FrozenSet[str] = frozenset()
    status: EntryStatus = EntryStatus.STAGED

    @property
    def key(self) -> EntryKey:
        return (self.name, self.version, self.digest)

    @property
    def payload(self) -> Path:
        return self.path / Constants.PAYLOAD_DIR

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "version": str(self.version),
            "digest": self.digest,
            "path": str(self.path),
            "installed_at": self.installed_at,
            "referrers": sorted(self.referrers),
            "status": self.status.value,
        }


class Store:
    """Explicit store value rooted at an injected directory.

    Use ``Store.open(root)`` (or the constructor followed by ``open()``) and
    ``close()``, or the context manager form.
    """

    def __init__(self, root: Union[str, Path], settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.layout = StoreLayout(Path(root))
        self._logs: Dict[str, HistoryLog] = {}
        self._logs_lock = threading.Lock()
        self._opened = False

    # -- lifecycle -------------------------------------------------------

    @classmethod
    def open(cls, root: Union[str, Path], settings: Optional[Settings] = None) -> "Store":
        store = cls(root, settings)
        store._open()
        return store

    def _open(self) -> None:
        self.layout.ensure()
        self._opened = True
        self._clean_tmp()
        for consumer in self.consumers():
            with self._consumer_lock(consumer, None):
                dangling = self._log(consumer).recover()
            if dangling:
                logger.warning("%sRecovered consumer '%s': aborted incomplete transactions %s",
                               STG, consumer, ", ".join(dangling))
        logger.debug("%sOpened store at %s", STG, self.layout.root)

    def close(self) -> None:
        with self._logs_lock:
            self._logs.clear()
        self._opened = False

    def __enter__(self) -> "Store":
        if not self._opened:
            self._open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def root(self) -> Path:
        return self.layout.root

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("store is not open")

    def _clean_tmp(self) -> None:
        cutoff = time.time() - self.settings.stale_tmp_seconds
        for child in self.layout.tmp_dir.iterdir():
            try:
                if child.stat().st_mtime < cutoff:
                    shutil.rmtree(child, ignore_errors=True)
            except OSError as e:
                logger.debug("Could not inspect temp entry %s: %s", child, e)

    # -- locking ---------------------------------------------------------

    def _log(self, consumer: str) -> HistoryLog:
        with self._logs_lock:
            log = self._logs.get(consumer)
            if log is None:
                log = HistoryLog(self.layout.history_path(consumer), consumer)
                self._logs[consumer] = log
            return log

    @contextmanager
    def _consumer_lock(self, consumer: str, transaction_id: Optional[str]) -> Iterator[None]:
        try:
            with file_lock(self.layout.consumer_lock(consumer), timeout=self.settings.lock_timeout):
                yield
        except LockTimeout as e:
            raise TransactionAborted(transaction_id, f"timed out waiting for consumer '{consumer}'",
                                     consumer=consumer) from e

    @contextmanager
    def _mutation(self, consumer: str, transaction_id: Optional[str]) -> Iterator[None]:
        """Shared store lock (excludes prune) plus the exclusive consumer lock."""
        try:
            with file_lock(self.layout.store_lock, exclusive=False, timeout=self.settings.lock_timeout):
                with self._consumer_lock(consumer, transaction_id):
                    yield
        except LockTimeout as e:
            raise TransactionAborted(transaction_id, "timed out waiting for the store lock",
                                     consumer=consumer) from e

    # -- entries ---------------------------------------------------------

    def _read_entry(self, entry_dir: Path, states: Optional[Mapping[str, ConsumerState]] = None) -> Optional[StoreEntry]:
        meta_path = self.layout.metadata_path(entry_dir)
        if not meta_path.is_file():
            return None
        try:
            meta = read_json(meta_path)
            name, version, digest = meta["name"], Version.parse(meta["version"]), meta["digest"]
        except (OSError, ValueError, KeyError) as e:
            logger.warning("%sIgnoring unreadable entry metadata %s: %s", STG, meta_path, e)
            return None
        referrers, status = self._status((name, version, digest), states)
        return StoreEntry(
            name=name,
            version=version,
            digest=digest,
            path=entry_dir,
            installed_at=str(meta.get("staged_at", "")),
            referrers=referrers,
            status=status,
        )

    def _states(self) -> Dict[str, ConsumerState]:
        return {c: self._log(c).refresh() for c in self.consumers()}

    def _status(self, key: EntryKey, states: Optional[Mapping[str, ConsumerState]]) -> Tuple[FrozenSet[str], EntryStatus]:
        if states is None:
            states = self._states()
        name, version, digest = key
        referrers = frozenset(c for c, st in states.items() if st.active.get(name) == (version, digest))
        if referrers:
            return referrers, EntryStatus.ACTIVE
        if any(key in st.ever_active for st in states.values()):
            return referrers, EntryStatus.SUPERSEDED
        if any(key in st.aborted for st in states.values()):
            return referrers, EntryStatus.ROLLED_BACK
        return referrers, EntryStatus.STAGED

    def lookup(self, name: str, version: Version, digest: Optional[str] = None,
               consumer: Optional[str] = None) -> Optional[StoreEntry]:
        """Find a staged entry.

        With ``digest`` the exact entry is returned. Without it, the digest the
        consumer last activated for that version wins, then the most recently
        staged entry.
        """
        self._require_open()
        if digest is not None:
            return self._read_entry(self.layout.entry_dir(name, version, digest))
        candidates = self.entries(name, version)
        if not candidates:
            return None
        if consumer is not None:
            preferred = self._log(consumer).refresh().last_digest.get((name, version))
            for entry in candidates:
                if entry.digest == preferred:
                    return entry
        return max(candidates, key=lambda e: e.installed_at)

    def entry(self, name: str, version: Version, digest: Optional[str] = None) -> StoreEntry:
        """Like ``lookup`` but raises VersionUnavailable when absent."""
        found = self.lookup(name, version, digest)
        if found is None:
            raise VersionUnavailable(name, version)
        return found

    def entries(self, name: Optional[str] = None, version: Optional[Version] = None) -> List[StoreEntry]:
        """List staged entries, optionally for one package (and version)."""
        self._require_open()
        if name is None:
            package_dirs = sorted(p for p in self.layout.packages_dir.iterdir() if p.is_dir())
        else:
            package_dirs = [self.layout.package_dir(name)]
        states = self._states()
        out: List[StoreEntry] = []
        for pkg_dir in package_dirs:
            if version is not None:
                version_dirs = [pkg_dir / str(version.major) / str(version)]
            else:
                version_dirs = sorted(v for m in pkg_dir.glob("*") if m.is_dir() for v in m.iterdir() if v.is_dir())
            for version_dir in version_dirs:
                if not version_dir.is_dir():
                    continue
                for entry_dir in sorted(version_dir.iterdir()):
                    entry = self._read_entry(entry_dir, states)
                    if entry is not None:
                        out.append(entry)
        out.sort(key=lambda e: (e.name, e.version, e.digest))
        return out

    def consumers(self) -> List[str]:
        """Consumers that have a history log."""
        if not self.layout.history_dir.is_dir():
            return []
        return sorted(self.layout.consumer_from_history(p)
                      for p in self.layout.history_dir.glob("*" + Constants.HISTORY_SUFFIX))

    # -- staging ---------------------------------------------------------

    def stage(self, name: str, version: Version, digest: str, source: Optional[Source] = None) -> StoreEntry:
        """Write content under its content-addressed path if not already present.

        Args:
            name: Package name.
            version: Package version.
            digest: Content digest; ``sha256:<hex>`` digests are verified
                against bytes and file/tree sources.
            source: Payload bytes, a file path or a directory tree.

        Returns:
            StoreEntry: The new entry, or the existing one (no-op) when present.

        Raises:
            ContentUnavailable: No source for a missing entry, unreadable
                source, or digest mismatch.
        """
        self._require_open()
        final = self.layout.entry_dir(name, version, digest)
        existing = self._read_entry(final)
        if existing is not None:
            return existing
        if source is None:
            raise ContentUnavailable(name, version, "no content supplied for staging", digest=digest)

        expected = parse_digest(digest)
        if expected is not None and expected[0] == Constants.DIGEST_ALGORITHM:
            actual = compute_digest(source)
            if actual != digest:
                raise ContentUnavailable(name, version, "digest mismatch", digest=digest, actual=actual)

        with Timer() as t:
            try:
                with file_lock(self.layout.store_lock, exclusive=False, timeout=self.settings.lock_timeout):
                    self._write_entry(final, name, version, digest, source)
            except LockTimeout as e:
                raise ContentUnavailable(name, version, "timed out waiting for the store lock") from e
        if is_debug_enabled(logger):
            logger.debug(
                "Staged entry",
                extra=extra_context(
                    event="store_stage",
                    component="store",
                    action="stage",
                    outcome="success",
                    target=f"{name}@{version}",
                    duration_ms=t.duration_ms(),
                ),
            )
        entry = self._read_entry(final)
        if entry is None:
            raise ContentUnavailable(name, version, "entry vanished after staging", digest=digest)
        return entry

    def _write_entry(self, final: Path, name: str, version: Version, digest: str, source: Source) -> None:
        tmp: Optional[Path] = Path(tempfile.mkdtemp(prefix=f"stage-{uuid.uuid4().hex[:8]}-", dir=str(self.layout.tmp_dir)))
        try:
            payload = self.layout.payload_dir(tmp)
            try:
                if isinstance(source, bytes):
                    payload.mkdir()
                    (payload / Constants.PAYLOAD_BLOB_NAME).write_bytes(source)
                else:
                    src = Path(source)
                    if src.is_dir():
                        shutil.copytree(src, payload, symlinks=True)
                    else:
                        payload.mkdir()
                        shutil.copy2(src, payload / src.name)
            except OSError as e:
                raise ContentUnavailable(name, version, f"cannot read content: {e}") from e
            write_json_atomic(self.layout.metadata_path(tmp), {
                "name": name,
                "version": str(version),
                "digest": digest,
                "staged_at": utc_timestamp(),
            })
            final.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(tmp, final)
                tmp = None
                fsync_dir(final.parent)
                logger.info("%sStaged %s@%s at %s", STG, name, version, final)
            except OSError as e:
                if e.errno not in (errno.EEXIST, errno.ENOTEMPTY) or not final.is_dir():
                    raise
                logger.debug("%s%s@%s was staged concurrently; keeping existing entry", STG, name, version)
        finally:
            if tmp is not None:
                shutil.rmtree(tmp, ignore_errors=True)

    # -- activation ------------------------------------------------------

    def active_versions(self, consumer: str) -> Dict[str, Version]:
        """Active version per package for ``consumer``."""
        self._require_open()
        return {n: v for n, (v, _d) in self._log(consumer).refresh().active.items()}

    def active_entries(self, consumer: str) -> Dict[str, StoreEntry]:
        """Active store entry per package for ``consumer``."""
        self._require_open()
        out: Dict[str, StoreEntry] = {}
        states = self._states()
        for name, (version, digest) in self._log(consumer).refresh().active.items():
            entry = self._read_entry(self.layout.entry_dir(name, version, digest), states)
            if entry is not None:
                out[name] = entry
        return out

    def active_paths(self, consumer: str) -> Dict[str, Path]:
        """Payload path per active package, for the external linker."""
        return {name: entry.payload for name, entry in self.active_entries(consumer).items()}

    def activate(self, graph, transaction_id: str, consumer: str) -> List[HistoryRecord]:
        """Make ``graph`` the consumer's active set in one atomic append.

        Every graph package must already be staged (with the digest recorded in
        the graph when it has one). Packages that left the graph get a removal
        record. An unchanged graph appends nothing.

        Args:
            graph: ResolvedGraph to activate.
            transaction_id: Transaction identifier recorded in history.
            consumer: Consumer whose pointers change.

        Returns:
            list: The appended HistoryRecords (possibly empty).

        Raises:
            TransactionAborted: Missing entry, lock timeout or write failure;
                no record is committed in that case.
        """
        self._require_open()
        with self._mutation(consumer, transaction_id):
            log = self._log(consumer)
            state = log.refresh()
            targets: Dict[str, Tuple[Version, str]] = {}
            for name in sorted(graph.versions):
                version = graph.versions[name]
                entry = self.lookup(name, version, graph.digests.get(name), consumer=consumer)
                if entry is None:
                    raise TransactionAborted(transaction_id, f"{name}@{version} is not staged",
                                             package=name, consumer=consumer)
                targets[name] = (version, entry.digest)

            timestamp = utc_timestamp()
            sequence = state.last_sequence
            records: List[HistoryRecord] = []
            for name in sorted(set(state.active) | set(targets)):
                before, after = state.active.get(name), targets.get(name)
                if before == after:
                    continue
                sequence += 1
                records.append(HistoryRecord(
                    sequence=sequence,
                    consumer=consumer,
                    package=name,
                    previous_version=before[0] if before else None,
                    previous_digest=before[1] if before else None,
                    new_version=after[0] if after else None,
                    new_digest=after[1] if after else None,
                    timestamp=timestamp,
                    transaction_id=transaction_id,
                    action="activate",
                ))
            if not records:
                logger.info("%sConsumer '%s' already up to date", STG, consumer)
                return []
            self._append(log, transaction_id, records)
        for record in records:
            logger.info("%s%s: %s %s -> %s (%s)", STG, consumer, record.package,
                        record.previous_version or "-", record.new_version or "-", record.change.value)
        return records

    def rollback(self, consumer: str, name: str, to_version: Version, *,
                 digest: Optional[str] = None, transaction_id: Optional[str] = None) -> Optional[HistoryRecord]:
        """Point ``consumer``'s ``name`` back at ``to_version``.

        Appends exactly one record; the displaced entry stays in the store and
        remains a valid target for a further rollback.

        Returns:
            The appended record, or None when ``to_version`` is already active.

        Raises:
            VersionUnavailable: ``to_version`` is not (or no longer) staged.
            TransactionAborted: Lock timeout or write failure.
        """
        self._require_open()
        transaction_id = transaction_id or uuid.uuid4().hex
        with self._mutation(consumer, transaction_id):
            log = self._log(consumer)
            state = log.refresh()
            entry = self.lookup(name, to_version, digest, consumer=consumer)
            if entry is None:
                raise VersionUnavailable(name, to_version, consumer)
            before = state.active.get(name)
            if before == (entry.version, entry.digest):
                return None
            record = HistoryRecord(
                sequence=state.last_sequence + 1,
                consumer=consumer,
                package=name,
                previous_version=before[0] if before else None,
                previous_digest=before[1] if before else None,
                new_version=entry.version,
                new_digest=entry.digest,
                timestamp=utc_timestamp(),
                transaction_id=transaction_id,
                action="rollback",
            )
            self._append(log, transaction_id, [record])
        logger.info("%s%s: rolled back %s %s -> %s", STG, consumer, name,
                    record.previous_version or "-", record.new_version)
        return record

    def _append(self, log: HistoryLog, transaction_id: str, records: List[HistoryRecord]) -> None:
        try:
            log.append_transaction(transaction_id, records)
        except OSError as e:
            raise TransactionAborted(transaction_id, f"history append failed: {e}",
                                     consumer=log.consumer) from e
        log.refresh()

    def history(self, name: Optional[str] = None, consumer: Optional[str] = None) -> HistoryView:
        """Committed history records, lazily and restartably.

        Args:
            name: Only records for this package.
            consumer: Only this consumer's log; all consumers otherwise.
        """
        self._require_open()
        consumers = [consumer] if consumer is not None else self.consumers()
        return HistoryView([self._log(c) for c in consumers], package=name)

    # -- retention -------------------------------------------------------

    def prune(self, older_than: Optional[float] = None) -> List[StoreEntry]:
        """Remove entries that no consumer has active.

        Args:
            older_than: Only entries staged more than this many seconds ago.

        Returns:
            list: The removed entries.
        """
        self._require_open()
        removed: List[StoreEntry] = []
        try:
            with file_lock(self.layout.store_lock, exclusive=True, timeout=self.settings.lock_timeout):
                now = time.time()
                for entry in self.entries():
                    if entry.status is EntryStatus.ACTIVE:
                        continue
                    if older_than is not None:
                        meta = self.layout.metadata_path(entry.path)
                        if now - meta.stat().st_mtime < older_than:
                            continue
                    trash = self.layout.tmp_dir / f"prune-{uuid.uuid4().hex}"
                    os.rename(entry.path, trash)
                    shutil.rmtree(trash, ignore_errors=True)
                    self._remove_empty_parents(entry.path.parent)
                    removed.append(entry)
        except LockTimeout as e:
            raise TransactionAborted(None, "timed out waiting for the exclusive store lock") from e
        if removed:
            logger.info("%sPruned %d entries", STG, len(removed))
        return removed

    def _remove_empty_parents(self, path: Path) -> None:
        while path != self.layout.packages_dir and path.is_dir():
            try:
                path.rmdir()
            except OSError:
                break
            path = path.parent
