"""Tests for artifact storage."""

from __future__ import annotations

import json
import tarfile
import threading
from pathlib import Path

import pytest

from parallelci.artifacts import ArtifactCollector, DirectorySink, MemorySink
from parallelci.errors import StorageError


def _build_output(root: Path) -> Path:
    release = root / "target" / "release"
    (release / "deps").mkdir(parents=True)
    (release / "app").write_text("binary", encoding="utf-8")
    (release / "deps" / "libfoo.rlib").write_text("lib", encoding="utf-8")
    return release


def test_directory_sink_writes_archive_and_manifest(tmp_path: Path) -> None:
    release = _build_output(tmp_path / "ws")
    sink = DirectorySink(tmp_path / "artifacts")

    handle = sink.store("build-linux", "app-linux", str(release))

    archive = tmp_path / "artifacts" / "build-linux" / "app-linux.tar.gz"
    assert handle.location == str(archive.resolve())
    with tarfile.open(archive, "r:gz") as tar:
        assert sorted(tar.getnames()) == ["app", "deps/libfoo.rlib"]

    manifest = json.loads((archive.parent / "app-linux.manifest.json").read_text(encoding="utf-8"))
    assert manifest["job"] == "build-linux"
    assert manifest["files"] == ["app", "deps/libfoo.rlib"]
    assert not list(archive.parent.glob("*.tmp"))


def test_directory_sink_accepts_globs(tmp_path: Path) -> None:
    release = _build_output(tmp_path / "ws")
    handle = DirectorySink(tmp_path / "artifacts").store("build-linux", "bin", str(release / "ap*"))
    with tarfile.open(handle.location, "r:gz") as tar:
        assert tar.getnames() == ["app"]


def test_directory_sink_nothing_matches(tmp_path: Path) -> None:
    with pytest.raises(StorageError, match="no files match"):
        DirectorySink(tmp_path / "artifacts").store("build-linux", "app", str(tmp_path / "missing"))


def test_collector_stores_each_key_once() -> None:
    sink = MemorySink()
    collector = ArtifactCollector(sink)

    first = collector.record("build-linux", "app", "/ws/app")
    second = collector.record("build-linux", "app", "/ws/other")

    assert first is second
    assert sink.stored == [("build-linux", "app", "/ws/app")]
    assert collector.for_job("build-linux") == [first]


def test_collector_same_name_different_jobs() -> None:
    collector = ArtifactCollector()
    collector.record("build-linux", "app", "/a")
    collector.record("build-mac", "app", "/b")
    assert {h.job_id for h in collector.handles()} == {"build-linux", "build-mac"}


def test_collector_concurrent_records_store_once() -> None:
    calls = []
    gate = threading.Barrier(8)

    class SlowSink(MemorySink):
        def store(self, job_id, name, path):
            calls.append(name)
            return super().store(job_id, name, path)

    collector = ArtifactCollector(SlowSink())

    def record() -> None:
        gate.wait()
        collector.record("build", "app", "/ws/app")

    threads = [threading.Thread(target=record) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == ["app"]


def test_collector_propagates_storage_errors() -> None:
    class Broken:
        def store(self, job_id, name, path):
            raise StorageError(job=job_id, name=name, message="read-only filesystem")

    collector = ArtifactCollector(Broken())
    with pytest.raises(StorageError, match="read-only filesystem"):
        collector.record("build", "app", "/ws/app")
    assert collector.get("build", "app") is None
