"""Tests for install transactions and content producers."""

import json
import threading
from unittest.mock import MagicMock

import pytest

from errors import ContentUnavailable, TransactionAborted
from resolver.engine import Resolver
from store.digest import compute_digest
from transaction.coordinator import TransactionCoordinator, write_link_manifest
from transaction.producer import CallableProducer, DirectoryProducer
from versioning.models import DependencySpec, RollingMinor, Version

TABLE = {
    "app": {"1.0.0": {"lib": {"major": 2, "rolling": "minor"}, "zlib": {"major": 1, "rolling": "minor"}}},
    "lib": {"2.0.0": {}, "2.1.0": {}},
    "zlib": {"1.3.0": {}},
}


def _content(name, version):
    return f"{name}-{version}".encode("utf-8")


@pytest.fixture
def graph(make_catalog):
    return Resolver(make_catalog(TABLE)).resolve([DependencySpec("app", RollingMinor(1))])


class TestTransactionCoordinator:
    """apply() stages then activates once."""

    def test_apply_stages_and_activates(self, store, graph):
        result = TransactionCoordinator(store, CallableProducer(_content)).apply(graph, "ci", "txn-1")

        assert result.transaction_id == "txn-1"
        assert [e.name for e in result.staged] == ["app", "lib", "zlib"]
        assert len(result.records) == 3
        assert store.active_versions("ci") == dict(graph.versions)
        assert result.graph.digests["lib"] == compute_digest(b"lib-2.1.0")
        assert (result.paths["lib"] / "content").read_bytes() == b"lib-2.1.0"

    def test_second_apply_stages_nothing(self, store, graph):
        coordinator = TransactionCoordinator(store, CallableProducer(_content))
        coordinator.apply(graph, "ci")
        producer = MagicMock()
        again = TransactionCoordinator(store, producer).apply(graph, "ci")

        producer.produce.assert_not_called()
        assert again.staged == []
        assert again.records == []
        assert not again.changed

    def test_content_unavailable_aborts(self, store, graph):
        def flaky(name, version):
            if name == "zlib":
                raise ContentUnavailable(name, version, "mirror down")
            return _content(name, version)

        with pytest.raises(TransactionAborted, match="mirror down") as exc:
            TransactionCoordinator(store, CallableProducer(flaky)).apply(graph, "ci", "txn-2")

        assert exc.value.transaction_id == "txn-2"
        assert store.active_versions("ci") == {}
        assert len(store.history(consumer="ci")) == 0

    def test_unexpected_producer_error_aborts(self, store, graph):
        def broken(name, version):
            if name == "lib":
                raise RuntimeError("build script crashed")
            return _content(name, version)

        with pytest.raises(TransactionAborted, match="build script crashed") as exc:
            TransactionCoordinator(store, CallableProducer(broken)).apply(graph, "ci", "txn-3")

        assert isinstance(exc.value.__cause__, ContentUnavailable)
        assert exc.value.to_dict()["package"] == "lib"
        assert store.active_versions("ci") == {}

    def test_cancel_before_start(self, store, graph):
        cancel = threading.Event()
        cancel.set()
        producer = MagicMock()
        with pytest.raises(TransactionAborted, match="cancelled"):
            TransactionCoordinator(store, producer).apply(graph, "ci", cancel=cancel)
        producer.produce.assert_not_called()

    def test_cancel_during_staging(self, store, graph):
        cancel = threading.Event()

        def cancelling(name, version):
            cancel.set()
            return _content(name, version)

        coordinator = TransactionCoordinator(store, CallableProducer(cancelling), workers=1)
        with pytest.raises(TransactionAborted, match="cancelled"):
            coordinator.apply(graph, "ci", cancel=cancel)
        assert store.active_versions("ci") == {}

    def test_link_manifest(self, store, graph, tmp_path):
        result = TransactionCoordinator(store, CallableProducer(_content)).apply(graph, "ci")
        path = tmp_path / "links" / "ci.json"

        write_link_manifest(path, result)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["consumer"] == "ci"
        assert data["packages"]["lib"]["version"] == "2.1.0"
        assert data["packages"]["lib"]["path"] == str(result.paths["lib"])


class TestDirectoryProducer:
    """Content served from a local directory tree."""

    def test_file_and_tree(self, tmp_path):
        (tmp_path / "lib" / "2.1.0").mkdir(parents=True)
        (tmp_path / "lib" / "2.1.0" / "lib.so").write_bytes(b"\x7fELF")
        (tmp_path / "zlib").mkdir()
        (tmp_path / "zlib" / "1.3.0").write_bytes(b"zlib")
        producer = DirectoryProducer(tmp_path)

        tree = producer.produce("lib", Version(2, 1, 0), None)
        blob = producer.produce("zlib", Version(1, 3, 0), None)

        assert tree.digest == compute_digest(tmp_path / "lib" / "2.1.0")
        assert blob.digest == compute_digest(b"zlib")

    def test_missing(self, tmp_path):
        with pytest.raises(ContentUnavailable):
            DirectoryProducer(tmp_path).produce("lib", Version(1, 0, 0), None)

    def test_hint_mismatch(self, tmp_path):
        (tmp_path / "lib").mkdir()
        (tmp_path / "lib" / "1.0.0").write_bytes(b"data")
        with pytest.raises(ContentUnavailable, match="digest mismatch"):
            DirectoryProducer(tmp_path).produce("lib", Version(1, 0, 0), "sha256:" + "0" * 64)

    def test_installs_into_store(self, store, graph, tmp_path):
        for name, version in graph.versions.items():
            target = tmp_path / "content" / name / str(version)
            target.mkdir(parents=True)
            (target / "README").write_text(name, encoding="utf-8")

        result = TransactionCoordinator(store, DirectoryProducer(tmp_path / "content")).apply(graph, "ci")

        assert (result.paths["zlib"] / "README").read_text(encoding="utf-8") == "zlib"
