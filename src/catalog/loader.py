"""Load a local catalog index from YAML or JSON.

Index shape::

    packages:
      clang:
        "17.0.6":
          digest: "sha256:..."
          dependencies:
            llvm-libs: {major: 17, rolling: minor}
        "17.1.0": {}
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping, Union

import yaml

from errors import ConfigError
from versioning.models import Version
from versioning.parser import spec_from_mapping

from .base import CatalogEntry
from .memory import InMemoryCatalog

logger = logging.getLogger(__name__)


def catalog_from_mapping(data: Mapping[str, Any]) -> InMemoryCatalog:
    """Build an InMemoryCatalog from a decoded index mapping."""
    packages = data.get("packages", data) if isinstance(data, Mapping) else None
    if not isinstance(packages, Mapping):
        raise ConfigError("catalog index must be a mapping of package name to versions")

    catalog = InMemoryCatalog()
    for name, versions in packages.items():
        if not isinstance(versions, Mapping):
            raise ConfigError(f"catalog index: versions of '{name}' must be a mapping")
        for raw_version, meta in versions.items():
            meta = meta or {}
            deps = meta.get("dependencies") or {}
            if not isinstance(deps, Mapping):
                raise ConfigError(f"catalog index: dependencies of {name}@{raw_version} must be a mapping")
            catalog.add(
                CatalogEntry(
                    name=str(name),
                    version=Version.parse(str(raw_version)),
                    dependencies=frozenset(spec_from_mapping(str(d), deps[d]) for d in deps),
                    digest=meta.get("digest"),
                )
            )
    return catalog


def load_catalog(path: Union[str, os.PathLike]) -> InMemoryCatalog:
    """Read a YAML (or ``.json``) catalog index file.

    Raises:
        ConfigError: When the file is missing or malformed.
    """
    path = os.fspath(path)
    if not os.path.isfile(path):
        raise ConfigError(f"catalog index not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            if path.lower().endswith(".json"):
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh) or {}
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read catalog index {path}: {e}") from e
    catalog = catalog_from_mapping(data)
    logger.debug("Loaded catalog index %s (%d entries)", path, len(catalog.snapshot()))
    return catalog
