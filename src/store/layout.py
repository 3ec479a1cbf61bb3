"""On-disk layout of the store.

    <root>/packages/<name>/<major>/<full-version>/<digest-key>/{entry.json,payload/}
    <root>/history/<consumer>.jsonl
    <root>/locks/{store.lock,consumer-<consumer>.lock}
    <root>/tmp/

Paths are derived deterministically from (name, version, digest); names are
percent-encoded so any opaque package or consumer name maps to one directory
component and back.
"""
from __future__ import annotations

import hashlib
import re
import urllib.parse
from pathlib import Path
from typing import Optional

from constants import Constants
from versioning.models import Version

_DIGEST_RE = re.compile(r"^([a-z0-9]+):([0-9a-f]{16,128})$")


def encode_name(name: str) -> str:
    """Percent-encode ``name`` into a single safe path component."""
    encoded = urllib.parse.quote(name, safe="")
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded


def decode_name(component: str) -> str:
    return urllib.parse.unquote(component)


def digest_key(digest: str) -> str:
    """Directory name for a digest.

    ``algo:hex`` digests map to ``algo-hex``; any other opaque handle maps to a
    stable hash of itself.
    """
    m = _DIGEST_RE.match(digest)
    if m:
        return f"{m.group(1)}-{m.group(2)}"
    return "h-" + hashlib.sha256(digest.encode("utf-8")).hexdigest()[: Constants.DIGEST_KEY_LENGTH]


def parse_digest(digest: str) -> Optional[tuple]:
    """Return (algorithm, hex) for ``algo:hex`` digests, else None."""
    m = _DIGEST_RE.match(digest)
    return (m.group(1), m.group(2)) if m else None


class StoreLayout:
    """Derives every path the store touches from its root."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    @property
    def packages_dir(self) -> Path:
        return self.root / Constants.PACKAGES_DIR

    @property
    def history_dir(self) -> Path:
        return self.root / Constants.HISTORY_DIR

    @property
    def locks_dir(self) -> Path:
        return self.root / Constants.LOCKS_DIR

    @property
    def tmp_dir(self) -> Path:
        return self.root / Constants.TMP_DIR

    @property
    def store_lock(self) -> Path:
        return self.locks_dir / Constants.STORE_LOCK_FILE

    def ensure(self) -> None:
        for path in (self.packages_dir, self.history_dir, self.locks_dir, self.tmp_dir):
            path.mkdir(parents=True, exist_ok=True)

    def package_dir(self, name: str) -> Path:
        return self.packages_dir / encode_name(name)

    def version_dir(self, name: str, version: Version) -> Path:
        return self.package_dir(name) / str(version.major) / str(version)

    def entry_dir(self, name: str, version: Version, digest: str) -> Path:
        return self.version_dir(name, version) / digest_key(digest)

    def metadata_path(self, entry_dir: Path) -> Path:
        return entry_dir / Constants.ENTRY_METADATA_FILE

    def payload_dir(self, entry_dir: Path) -> Path:
        return entry_dir / Constants.PAYLOAD_DIR

    def history_path(self, consumer: str) -> Path:
        return self.history_dir / (encode_name(consumer) + Constants.HISTORY_SUFFIX)

    def consumer_lock(self, consumer: str) -> Path:
        return self.locks_dir / f"consumer-{encode_name(consumer)}.lock"

    def consumer_from_history(self, path: Path) -> str:
        return decode_name(path.name[: -len(Constants.HISTORY_SUFFIX)])
