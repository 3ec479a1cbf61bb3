"""Content digests for staged payloads."""
from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Union

from constants import Constants

Source = Union[bytes, str, Path]

_CHUNK = 1024 * 1024


def _hash_file(h, path: Path) -> None:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)


def compute_digest(source: Source) -> str:
    """Return ``sha256:<hex>`` for bytes, a file, or a directory tree.

    Trees hash every regular file's relative POSIX path and contents in sorted
    order, so the digest does not depend on filesystem iteration order.
    """
    h = hashlib.new(Constants.DIGEST_ALGORITHM)
    if isinstance(source, bytes):
        h.update(source)
    else:
        path = Path(source)
        if path.is_dir():
            files = []
            for dirpath, _dirnames, filenames in os.walk(path):
                for fname in filenames:
                    full = Path(dirpath) / fname
                    files.append((full.relative_to(path).as_posix(), full))
            for rel, full in sorted(files):
                h.update(rel.encode("utf-8") + b"\0")
                _hash_file(h, full)
                h.update(b"\0")
        else:
            _hash_file(h, path)
    return f"{Constants.DIGEST_ALGORITHM}:{h.hexdigest()}"
