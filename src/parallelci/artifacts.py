# artifacts.py
from __future__ import annotations

import glob
import json
import os
import tarfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import StorageError
from .model import ArtifactHandle

DEFAULT_ARTIFACT_DIR = ".parallelci/artifacts"


class ArtifactSink(Protocol):
    """External storage. Retention is the sink's business, not ours."""

    def store(self, job_id: str, name: str, path: str) -> ArtifactHandle:
        ...


class MemorySink:
    """Keeps the (job, name) -> path mapping only. Nothing is copied."""

    def __init__(self) -> None:
        self.stored: List[Tuple[str, str, str]] = []

    def store(self, job_id: str, name: str, path: str) -> ArtifactHandle:
        self.stored.append((job_id, name, path))
        return ArtifactHandle(job_id=job_id, name=name, path=path, location=path)


def expand_paths(path: str) -> List[Path]:
    """Glob `path` (absolute, `**` allowed) into sorted existing paths."""
    return sorted(Path(p) for p in glob.glob(path, recursive=True))


class DirectorySink:
    """
    Local file-based sink:
      root/
        <job_id>/
          <name>.tar.gz
          <name>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()

    def _job_dir(self, job_id: str) -> Path:
        d = self.root / job_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def archive_path(self, job_id: str, name: str) -> Path:
        return self._job_dir(job_id) / f"{name}.tar.gz"

    def manifest_path(self, job_id: str, name: str) -> Path:
        return self._job_dir(job_id) / f"{name}.manifest.json"

    def store(self, job_id: str, name: str, path: str) -> ArtifactHandle:
        matches = expand_paths(path)
        files: List[Path] = []
        for m in matches:
            if m.is_file():
                files.append(m)
            elif m.is_dir():
                files.extend(sorted(f for f in m.rglob("*") if f.is_file()))
        if not files:
            raise StorageError(job=job_id, name=name, message=f"no files match {path}")

        base = Path(os.path.commonpath([str(f.parent) for f in files]))

        try:
            art = self.archive_path(job_id, name)
            tmp = art.with_suffix(".gz.tmp")
            try:
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    for f in files:
                        tar.add(str(f), arcname=str(f.relative_to(base)).replace("\\", "/"), recursive=False)
                tmp.replace(art)
            finally:
                tmp.unlink(missing_ok=True)

            manifest = {
                "job": job_id,
                "name": name,
                "source": path,
                "files": [str(f.relative_to(base)).replace("\\", "/") for f in files],
                "stored_at_unix": int(time.time()),
            }
            self.manifest_path(job_id, name).write_text(
                json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            raise StorageError(job=job_id, name=name, message=str(e)) from e

        return ArtifactHandle(job_id=job_id, name=name, path=path, location=str(art))


class ArtifactCollector:
    """
    Records artifacts of successful jobs and hands them to the sink.

    Writes are serialized per (job_id, name) key; the sink is not assumed
    to be atomic. Each key is stored at most once.
    """

    def __init__(self, sink: ArtifactSink | None = None):
        self.sink: ArtifactSink = sink if sink is not None else MemorySink()
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._records: Dict[Tuple[str, str], ArtifactHandle] = {}

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def record(self, job_id: str, artifact_name: str, path: str) -> ArtifactHandle:
        """Store one artifact. Raises StorageError if the sink refuses it."""
        key = (job_id, artifact_name)
        with self._lock_for(key):
            existing = self._records.get(key)
            if existing is not None:
                return existing
            handle = self.sink.store(job_id, artifact_name, path)
            with self._guard:
                self._records[key] = handle
            return handle

    def get(self, job_id: str, artifact_name: str) -> Optional[ArtifactHandle]:
        with self._guard:
            return self._records.get((job_id, artifact_name))

    def for_job(self, job_id: str) -> List[ArtifactHandle]:
        with self._guard:
            return [h for (j, _), h in self._records.items() if j == job_id]

    def handles(self) -> List[ArtifactHandle]:
        with self._guard:
            return list(self._records.values())
