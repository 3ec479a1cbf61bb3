"""Content producers: where staged bytes come from.

Fetching and building are outside the package manager core; the coordinator
only needs something that turns (name, version, digest hint) into a digest
and a source it can copy into the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from errors import ContentUnavailable
from store.digest import Source, compute_digest
from versioning.models import Version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProducedContent:
    """Bytes, a file or a directory tree plus its digest."""

    digest: str
    source: Source


class ContentProducer:
    """Interface for content producers.

    Implementations raise ContentUnavailable when they cannot supply content.
    """

    def produce(self, name: str, version: Version, digest_hint: Optional[str]) -> ProducedContent:
        """Return content for ``name@version``.

        Args:
            name: Package name.
            version: Package version.
            digest_hint: Digest recorded by the catalog, if any.
        """
        raise NotImplementedError


class DirectoryProducer(ContentProducer):
    """Serve content from ``<root>/<name>/<version>`` (a file or a tree)."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def produce(self, name: str, version: Version, digest_hint: Optional[str]) -> ProducedContent:
        path = self.root / name / str(version)
        if not path.exists():
            raise ContentUnavailable(name, version, f"no content at {path}")
        try:
            digest = compute_digest(path)
        except OSError as e:
            raise ContentUnavailable(name, version, f"cannot read {path}: {e}") from e
        if digest_hint is not None and digest_hint.startswith("sha256:") and digest_hint != digest:
            raise ContentUnavailable(name, version, "digest mismatch", digest=digest_hint, actual=digest)
        logger.debug("Producing %s@%s from %s", name, version, path)
        return ProducedContent(digest=digest, source=path)


class CallableProducer(ContentProducer):
    """Adapt a plain function ``(name, version) -> bytes`` into a producer."""

    def __init__(self, func: Callable[[str, Version], bytes]):
        self.func = func

    def produce(self, name: str, version: Version, digest_hint: Optional[str]) -> ProducedContent:
        data = self.func(name, version)
        if data is None:
            raise ContentUnavailable(name, version)
        return ProducedContent(digest=compute_digest(data), source=data)
