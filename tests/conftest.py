"""Shared fixtures: catalogs built from compact tables and throwaway stores."""

import pytest

from catalog.base import CatalogEntry
from catalog.memory import InMemoryCatalog
from config import Settings
from store.store import Store
from versioning.models import DependencySpec, Version
from versioning.parser import policy_from_mapping


def build_catalog(table, digests=None):
    """Build a catalog from ``{name: {"x.y.z": {dep: policy-mapping}}}``."""
    digests = digests or {}
    catalog = InMemoryCatalog()
    for name, versions in table.items():
        for raw, deps in versions.items():
            specs = frozenset(
                DependencySpec(dep, policy_from_mapping(policy)) for dep, policy in (deps or {}).items()
            )
            catalog.add(CatalogEntry(name, Version.parse(raw), specs, digests.get((name, raw))))
    return catalog


@pytest.fixture
def make_catalog():
    """Factory fixture around build_catalog."""
    return build_catalog


@pytest.fixture
def settings(tmp_path):
    """Settings with a short lock timeout and a store under tmp_path."""
    return Settings(store_root=str(tmp_path / "store"), lock_timeout=5.0, staging_workers=2)


@pytest.fixture
def store(settings):
    """An opened store, closed after the test."""
    s = Store.open(settings.store_path, settings)
    yield s
    s.close()
