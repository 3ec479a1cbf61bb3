"""Tests for manifest-style policy parsing and catalog providers."""

import json
import threading

import pytest

from catalog.base import CatalogEntry
from catalog.loader import catalog_from_mapping, load_catalog
from catalog.memory import InMemoryCatalog
from errors import ConfigError, PolicyValidationError, UnknownPackage
from versioning.models import DependencySpec, Fixed, RollingMajor, RollingMinor, RollingPatch, Version
from versioning.parser import policy_from_mapping, spec_from_mapping, specs_from_manifest


class TestPolicyFromMapping:
    """Boundary parsing of policy mappings."""

    def test_rolling_minor(self):
        assert policy_from_mapping({"major": 17, "rolling": "minor"}) == RollingMinor(17)

    def test_rolling_major(self):
        assert policy_from_mapping({"major": 2, "rolling": "major"}) == RollingMajor(2)

    def test_fixed_from_version_string(self):
        assert policy_from_mapping({"version": "17.0.6"}) == Fixed(17, 0, 6)

    def test_rolling_patch_with_minor(self):
        assert policy_from_mapping({"major": 3, "minor": 1, "rolling": "patch"}) == RollingPatch(3, 1)

    def test_rolling_patch_takes_minor_from_active_version(self):
        policy = policy_from_mapping({"major": 3, "rolling": "patch"}, current=Version(3, 4, 1))
        assert policy == RollingPatch(3, 4)

    def test_rolling_patch_defaults_minor_to_zero(self):
        policy = policy_from_mapping({"major": 3, "rolling": "patch"}, current=Version(2, 4, 1))
        assert policy == RollingPatch(3, 0)

    def test_missing_major_rejected(self):
        with pytest.raises(PolicyValidationError, match="major"):
            policy_from_mapping({"rolling": "minor"})

    def test_unknown_rolling_mode_rejected(self):
        with pytest.raises(PolicyValidationError, match="rolling mode"):
            policy_from_mapping({"major": 1, "rolling": "sometimes"})

    def test_fixed_needs_full_version(self):
        with pytest.raises(PolicyValidationError):
            policy_from_mapping({"major": 1, "minor": 2})

    def test_bool_component_rejected(self):
        with pytest.raises(PolicyValidationError):
            policy_from_mapping({"major": True, "rolling": "minor"})


class TestSpecs:
    """DependencySpec construction from manifests."""

    def test_string_means_fixed(self):
        assert spec_from_mapping("clang", "17.0.6") == DependencySpec("clang", Fixed(17, 0, 6))

    def test_minimum(self):
        spec = spec_from_mapping("openssl", {"major": 3, "minor": 0, "rolling": "patch", "minimum": "3.0.2"})
        assert spec.minimum == Version(3, 0, 2)

    def test_manifest_sorted_by_name(self):
        specs = specs_from_manifest({"openssl": {"major": 3, "rolling": "patch"},
                                     "clang": {"major": 17, "rolling": "minor"}})
        assert [s.name for s in specs] == ["clang", "openssl"]

    def test_empty_name_rejected(self):
        with pytest.raises(PolicyValidationError):
            DependencySpec("", RollingMinor(1))


class TestInMemoryCatalog:
    """Catalog contract and snapshot isolation."""

    def test_versions_newest_first(self, make_catalog):
        catalog = make_catalog({"clang": {"17.0.6": {}, "17.1.0": {}, "16.0.0": {}}})
        assert [str(v) for v in catalog.versions_of("clang")] == ["17.1.0", "17.0.6", "16.0.0"]

    def test_unknown_package(self, make_catalog):
        catalog = make_catalog({"clang": {"17.0.6": {}}})
        with pytest.raises(UnknownPackage):
            catalog.versions_of("gcc")
        assert not catalog.has("gcc")

    def test_dependencies_of(self, make_catalog):
        catalog = make_catalog({"app": {"1.0.0": {"lib": {"major": 2, "rolling": "minor"}}}})
        deps = catalog.dependencies_of("app", Version(1, 0, 0))
        assert deps == frozenset({DependencySpec("lib", RollingMinor(2))})

    def test_snapshot_isolated_from_later_adds(self, make_catalog):
        catalog = make_catalog({"lib": {"1.0.0": {}}})
        snap = catalog.snapshot()
        catalog.add(CatalogEntry("lib", Version(1, 1, 0)))
        assert snap.versions_of("lib") == [Version(1, 0, 0)]
        assert snap.names() == ["lib"]
        assert catalog.versions_of("lib") == [Version(1, 1, 0), Version(1, 0, 0)]

    def test_conflicting_duplicate_rejected(self):
        catalog = InMemoryCatalog([CatalogEntry("lib", Version(1, 0, 0), digest="sha256:aa")])
        catalog.add(CatalogEntry("lib", Version(1, 0, 0), digest="sha256:aa"))
        with pytest.raises(ValueError):
            catalog.add(CatalogEntry("lib", Version(1, 0, 0), digest="sha256:bb"))

    def test_concurrent_adds(self):
        catalog = InMemoryCatalog()

        def add_range(major):
            for minor in range(50):
                catalog.add(CatalogEntry("lib", Version(major, minor, 0)))

        threads = [threading.Thread(target=add_range, args=(m,)) for m in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(catalog.snapshot()) == 200


class TestCatalogLoader:
    """Local index files."""

    def test_from_mapping(self):
        catalog = catalog_from_mapping({
            "packages": {
                "clang": {
                    "17.0.6": {"digest": "sha256:" + "a" * 64,
                               "dependencies": {"llvm-libs": {"major": 17, "rolling": "minor"}}},
                },
                "llvm-libs": {"17.0.1": None},
            }
        })
        entry = catalog.entry("clang", Version(17, 0, 6))
        assert entry.digest == "sha256:" + "a" * 64
        assert {d.name for d in entry.dependencies} == {"llvm-libs"}
        assert catalog.versions_of("llvm-libs") == [Version(17, 0, 1)]

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "index.yml"
        path.write_text('packages:\n  openssl:\n    "3.0.1": {}\n    "3.0.2": {}\n', encoding="utf-8")
        catalog = load_catalog(path)
        assert catalog.versions_of("openssl")[0] == Version(3, 0, 2)

    def test_json_file(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text(json.dumps({"zlib": {"1.3.0": {}}}), encoding="utf-8")
        assert load_catalog(str(path)).has("zlib")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_catalog(tmp_path / "nope.yml")

    def test_malformed_versions(self):
        with pytest.raises(ConfigError):
            catalog_from_mapping({"packages": {"zlib": ["1.0.0"]}})
