"""Append-only history log, one JSON-lines file per consumer.

Each transaction is appended as its record lines followed by a commit marker,
in a single fsynced write. Replay applies a transaction's records only once
its commit marker is seen; records without one (a torn append) are ignored and
get an abort marker during recovery. The log is the only source of truth for
a consumer's active versions.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from common.file_io import canonical_json_bytes, durable_append, utc_timestamp
from versioning.models import ChangeKind, Version
from versioning.policy import classify_change

logger = logging.getLogger(__name__)

# (version, digest) pointer of one package for one consumer
Pointer = Tuple[Version, str]
# (name, version, digest) identity of a store entry
EntryKey = Tuple[str, Version, str]

RECORD = "record"
COMMIT = "commit"
ABORT = "abort"


def _version(text: Optional[str]) -> Optional[Version]:
    return None if text is None else Version.parse(text)


@dataclass(frozen=True)
class HistoryRecord:
    """One committed change of a consumer's active version of a package."""

    sequence: int
    consumer: str
    package: str
    previous_version: Optional[Version]
    new_version: Optional[Version]
    timestamp: str
    transaction_id: str
    action: str = "activate"
    previous_digest: Optional[str] = None
    new_digest: Optional[str] = None

    @property
    def change(self) -> ChangeKind:
        return classify_change(self.previous_version, self.new_version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": RECORD,
            "seq": self.sequence,
            "consumer": self.consumer,
            "package": self.package,
            "previous": None if self.previous_version is None else str(self.previous_version),
            "previous_digest": self.previous_digest,
            "new": None if self.new_version is None else str(self.new_version),
            "new_digest": self.new_digest,
            "ts": self.timestamp,
            "txn": self.transaction_id,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            sequence=int(data["seq"]),
            consumer=str(data["consumer"]),
            package=str(data["package"]),
            previous_version=_version(data.get("previous")),
            new_version=_version(data.get("new")),
            timestamp=str(data["ts"]),
            transaction_id=str(data["txn"]),
            action=str(data.get("action", "activate")),
            previous_digest=data.get("previous_digest"),
            new_digest=data.get("new_digest"),
        )


@dataclass
class ConsumerState:
    """Replayed state of one consumer's log."""

    active: Dict[str, Pointer] = field(default_factory=dict)
    last_sequence: int = 0
    offset: int = 0
    pending: Dict[str, List[HistoryRecord]] = field(default_factory=dict)
    ever_active: Set[EntryKey] = field(default_factory=set)
    aborted: Set[EntryKey] = field(default_factory=set)
    # most recent digest activated per (name, version)
    last_digest: Dict[Tuple[str, Version], str] = field(default_factory=dict)


def _parse_lines(chunk: bytes, path: Path) -> Iterator[Dict[str, Any]]:
    for raw in chunk.split(b"\n"):
        if not raw.strip():
            continue
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Skipping unreadable history line in %s", path)
            continue
        if isinstance(obj, dict):
            yield obj


class HistoryLog:
    """Reader/writer for one consumer's log file."""

    def __init__(self, path: Path, consumer: str):
        self.path = Path(path)
        self.consumer = consumer
        self._state = ConsumerState()
        self._lock = threading.Lock()

    def refresh(self) -> ConsumerState:
        """Replay any lines appended since the last call and return the state.

        A trailing fragment without a newline is left for a later call.
        """
        with self._lock:
            state = self._state
            if not self.path.exists():
                return state
            with open(self.path, "rb") as f:
                f.seek(state.offset)
                data = f.read()
            end = data.rfind(b"\n")
            if end < 0:
                return state
            complete = data[: end + 1]
            for obj in _parse_lines(complete, self.path):
                self._apply(state, obj)
            state.offset += len(complete)
            return state

    @staticmethod
    def _apply(state: ConsumerState, obj: Dict[str, Any]) -> None:
        kind = obj.get("type")
        if kind == RECORD:
            try:
                record = HistoryRecord.from_dict(obj)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed history record: %r", obj)
                return
            state.pending.setdefault(record.transaction_id, []).append(record)
            state.last_sequence = max(state.last_sequence, record.sequence)
        elif kind == COMMIT:
            for record in state.pending.pop(str(obj.get("txn")), []):
                if record.new_version is None:
                    state.active.pop(record.package, None)
                    continue
                digest = record.new_digest or ""
                state.active[record.package] = (record.new_version, digest)
                state.ever_active.add((record.package, record.new_version, digest))
                state.last_digest[(record.package, record.new_version)] = digest
        elif kind == ABORT:
            for record in state.pending.pop(str(obj.get("txn")), []):
                if record.new_version is not None:
                    state.aborted.add((record.package, record.new_version, record.new_digest or ""))

    def append_transaction(self, transaction_id: str, records: List[HistoryRecord]) -> None:
        """Append ``records`` and their commit marker in one durable write.

        The caller holds the consumer lock. On failure nothing is committed.
        """
        lines = [canonical_json_bytes(r.to_dict()) for r in records]
        lines.append(canonical_json_bytes(
            {"type": COMMIT, "txn": transaction_id, "count": len(records), "ts": utc_timestamp()}))
        durable_append(self.path, b"\n".join(lines) + b"\n")

    def recover(self) -> List[str]:
        """Abort transactions left without a commit marker; return their ids.

        The caller holds the consumer lock, so no writer is mid-append.
        """
        state = self.refresh()
        if self.path.exists() and self.path.stat().st_size > state.offset:
            logger.warning("Torn history tail in %s", self.path)
        dangling = sorted(state.pending)
        if dangling:
            markers = [canonical_json_bytes({"type": ABORT, "txn": txn, "reason": "recovered",
                                             "ts": utc_timestamp()}) for txn in dangling]
            durable_append(self.path, b"\n".join(markers) + b"\n")
            self.refresh()
        elif self.path.exists() and self.path.stat().st_size > state.offset:
            # terminate the torn fragment so it becomes its own unreadable line
            durable_append(self.path, b"")
            self.refresh()
        return dangling


class HistoryView:
    """Lazy, finite, restartable sequence of committed history records.

    Each iteration re-reads the logs, bounded by their sizes at the start of
    that iteration, and yields records in sequence order per consumer. When
    several consumers are merged, records are ordered by (timestamp, consumer,
    sequence).
    """

    def __init__(self, logs: List[HistoryLog], package: Optional[str] = None):
        self._logs = list(logs)
        self._package = package

    def _iter_log(self, log: HistoryLog) -> Iterator[HistoryRecord]:
        if not log.path.exists():
            return
        limit = log.path.stat().st_size
        pending: Dict[str, List[HistoryRecord]] = {}
        read = 0
        with open(log.path, "rb") as f:
            for raw in f:
                read += len(raw)
                if read > limit or not raw.endswith(b"\n"):
                    break
                for obj in _parse_lines(raw, log.path):
                    kind = obj.get("type")
                    if kind == RECORD:
                        try:
                            record = HistoryRecord.from_dict(obj)
                        except (KeyError, TypeError, ValueError):
                            continue
                        pending.setdefault(record.transaction_id, []).append(record)
                    elif kind == COMMIT:
                        for record in pending.pop(str(obj.get("txn")), []):
                            if self._package is None or record.package == self._package:
                                yield record
                    elif kind == ABORT:
                        pending.pop(str(obj.get("txn")), None)

    def __iter__(self) -> Iterator[HistoryRecord]:
        if len(self._logs) == 1:
            yield from self._iter_log(self._logs[0])
            return
        merged: List[HistoryRecord] = []
        for log in self._logs:
            merged.extend(self._iter_log(log))
        merged.sort(key=lambda r: (r.timestamp, r.consumer, r.sequence))
        yield from merged

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def last(self) -> Optional[HistoryRecord]:
        out = None
        for out in self:
            pass
        return out
