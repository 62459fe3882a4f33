"""Test configuration and fixtures."""

from __future__ import annotations

import io
import threading
import time
from pathlib import Path

import pytest

from parallelci.actions import Action, ActionRegistry, ActionResult, default_registry
from parallelci.artifacts import ArtifactCollector, MemorySink
from parallelci.model import ExecutionContext, Runner
from parallelci.runner import LocalRunnerProvider
from parallelci.ui.console import Console


class StubActions:
    """Builds stub actions that count their calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def count(self, name: str, job: str | None = None) -> int:
        with self._lock:
            return sum(1 for n, j, _ in self.calls if n == name and (job is None or j == job))

    def make(
        self,
        name: str,
        *,
        exit_code: int = 0,
        outputs: dict | None = None,
        stderr: str = "",
        raises: Exception | None = None,
        sleep: float = 0.0,
        started: threading.Event | None = None,
        wait_for: threading.Event | None = None,
        wait_timeout: float = 5.0,
        required: tuple[str, ...] = (),
    ) -> Action:
        def invoke(call):
            with self._lock:
                self.calls.append((name, call.context.job_id, dict(call.inputs)))
            if started is not None:
                started.set()
            if wait_for is not None and not wait_for.wait(wait_timeout):
                return ActionResult(exit_code=99, stderr="stub gave up waiting")
            if sleep:
                time.sleep(sleep)
            if raises is not None:
                raise raises
            return ActionResult(exit_code=exit_code, stderr=stderr, outputs=outputs or {})

        return Action(name=name, invoke=invoke, required_inputs=required)


@pytest.fixture
def stubs() -> StubActions:
    return StubActions()


@pytest.fixture
def registry(stubs: StubActions) -> ActionRegistry:
    """Built-ins plus `ok`, `fail` and `boom` stubs."""
    reg = default_registry()
    reg.register(stubs.make("ok"))
    reg.register(stubs.make("fail", exit_code=2, stderr="compile error\nmore"))
    reg.register(stubs.make("boom", raises=RuntimeError("kaboom")))
    return reg


@pytest.fixture
def console() -> Console:
    """A console that writes into a buffer instead of the terminal."""
    return Console(stream=io.StringIO())


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def collector(sink: MemorySink) -> ArtifactCollector:
    return ArtifactCollector(sink)


@pytest.fixture
def runners(tmp_path: Path) -> LocalRunnerProvider:
    return LocalRunnerProvider(tmp_path / "work")


@pytest.fixture
def context(tmp_path: Path) -> ExecutionContext:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return ExecutionContext(job_id="build", runner=Runner.LINUX_X64, workspace=workspace, env={"MODE": "release"})
