"""End-to-end tests through the PackageManager facade."""

import json

import pytest

from catalog.base import CatalogEntry
from config import Settings
from errors import PolicyConflict, PolicyValidationError
from polypin import PackageManager, diff_versions
from transaction.producer import CallableProducer
from versioning.models import ChangeKind, DependencySpec, Fixed, RollingMinor, Version


def _v(text):
    return Version.parse(text)


@pytest.fixture
def manager(tmp_path, make_catalog):
    catalog = make_catalog({
        "clang": {"17.0.6": {}, "17.1.0": {}},
        "openssl": {"3.0.1": {}, "3.0.2": {}},
    })
    producer = CallableProducer(lambda name, version: f"{name} {version}".encode("utf-8"))
    pm = PackageManager(catalog, producer, settings=Settings(store_root=str(tmp_path / "store")))
    yield pm
    pm.close()


class TestPackageManager:
    """plan / install / rollback / history."""

    def test_clang_openssl_upgrade(self, manager):
        manager.install({"clang": "17.0.6", "openssl": "3.0.1"}, "dev")
        assert manager.active("dev") == {"clang": _v("17.0.6"), "openssl": _v("3.0.1")}

        result = manager.install({
            "clang": {"major": 17, "rolling": "minor"},
            "openssl": {"major": 3, "rolling": "patch"},
        }, "dev")

        assert manager.active("dev") == {"clang": _v("17.1.0"), "openssl": _v("3.0.2")}
        assert len(result.records) == 2
        assert {r.package: r.change for r in result.records} == {
            "clang": ChangeKind.MINOR_UPDATE,
            "openssl": ChangeKind.PATCH_UPDATE,
        }
        assert len(manager.history(consumer="dev")) == 4

    def test_plan_does_not_touch_store(self, manager):
        plan = manager.plan({"clang": {"major": 17, "rolling": "minor"}}, "dev")
        assert plan.graph.version_of("clang") == _v("17.1.0")
        assert [c.kind for c in plan.changes] == [ChangeKind.INSTALL]
        assert manager.active("dev") == {}
        assert manager.store.entries() == []

    def test_reinstall_is_noop(self, manager):
        manifest = {"clang": {"major": 17, "rolling": "minor"}}
        manager.install(manifest, "dev")
        assert manager.plan(manifest, "dev").is_noop
        assert manager.install(manifest, "dev").records == []

    def test_consumers_hold_different_versions(self, manager):
        manager.install({"clang": "17.0.6"}, "legacy")
        manager.install({"clang": {"major": 17, "rolling": "minor"}}, "dev")

        assert manager.active("legacy") == {"clang": _v("17.0.6")}
        assert manager.active("dev") == {"clang": _v("17.1.0")}
        assert manager.paths("legacy")["clang"] != manager.paths("dev")["clang"]

    def test_rollback(self, manager):
        manager.install({"clang": "17.0.6"}, "dev")
        manager.install({"clang": "17.1.0"}, "dev")

        record = manager.rollback("dev", "clang", _v("17.0.6"))

        assert record.change is ChangeKind.DOWNGRADE
        assert manager.active("dev") == {"clang": _v("17.0.6")}
        assert [str(e.version) for e in manager.prune()] == ["17.1.0"]

    def test_new_catalog_versions_are_picked_up(self, manager):
        manifest = {"openssl": {"major": 3, "rolling": "patch"}}
        manager.install(manifest, "dev")
        manager.catalog.add(CatalogEntry("openssl", _v("3.0.3")))

        result = manager.install(manifest, "dev")

        assert [str(r.new_version) for r in result.records] == ["3.0.3"]

    def test_link_manifest(self, manager, tmp_path):
        out = tmp_path / "dev.links.json"
        manager.install({"clang": "17.0.6"}, "dev", link_manifest=out)
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["packages"]["clang"]["version"] == "17.0.6"

    def test_policy_conflict_changes_nothing(self, manager):
        with pytest.raises(PolicyConflict):
            manager.install([DependencySpec("clang", RollingMinor(17)),
                             DependencySpec("clang", Fixed(18, 0, 0))], "dev")
        assert manager.active("dev") == {}

    def test_manifest_without_major(self, manager):
        with pytest.raises(PolicyValidationError):
            manager.install({"clang": {"rolling": "minor"}}, "dev")


class TestDiffVersions:
    """Plan diffs."""

    def test_diff(self):
        changes = diff_versions({"a": _v("1.0.0"), "b": _v("1.0.0")}, {"a": _v("1.1.0"), "c": _v("2.0.0")})
        assert [(c.package, c.kind) for c in changes] == [
            ("a", ChangeKind.MINOR_UPDATE),
            ("b", ChangeKind.REMOVE),
            ("c", ChangeKind.INSTALL),
        ]
        assert str(changes[1]) == "b: 1.0.0 -> - (remove)"
