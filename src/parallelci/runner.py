# runner.py
from __future__ import annotations

import platform
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Set, Tuple

from .actions import ActionRegistry
from .artifacts import ArtifactCollector
from .errors import RunnerUnavailable, StepFailure, StorageError
from .executor import StepExecutor
from .model import ArtifactHandle, ExecutionContext, Job, RunOutcome, Runner
from .ui.console import Console, get_console

DEFAULT_WORK_DIR = ".parallelci/work"


class CancelToken:
    """
    Cooperative cancellation for one workflow execution.

    Running jobs finish their current step and stop; jobs that haven't
    started are skipped. Steps are never interrupted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancellation requested") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


# ----------------------------------------------------------------------
# Runner provisioning (external collaborator)
# ----------------------------------------------------------------------

# Which job runners a host of a given class can serve.
COMPATIBLE: Dict[Runner, Set[Runner]] = {
    Runner.WINDOWS_X64: {Runner.WINDOWS_X64, Runner.WINDOWS_X86},
    Runner.WINDOWS_X86: {Runner.WINDOWS_X86},
    Runner.LINUX_X64: {Runner.LINUX_X64},
    Runner.LINUX_ARM64: {Runner.LINUX_ARM64},
    Runner.MACOS_X64: {Runner.MACOS_X64},
    Runner.MACOS_ARM64: {Runner.MACOS_ARM64, Runner.MACOS_X64},
}

_MACHINES = {
    "x86_64": "x64", "amd64": "x64",
    "i386": "x86", "i686": "x86", "x86": "x86",
    "arm64": "arm64", "aarch64": "arm64",
}
_SYSTEMS = {"windows": "windows", "linux": "linux", "darwin": "macos"}


def host_runner(system: str | None = None, machine: str | None = None) -> Optional[Runner]:
    """The Runner class of this machine, or None if it isn't one we know."""
    system = _SYSTEMS.get((system or platform.system()).lower())
    machine = _MACHINES.get((machine or platform.machine()).lower())
    if not system or not machine:
        return None
    try:
        return Runner(f"{system}-{machine}")
    except ValueError:
        return None


class RunnerProvider(Protocol):
    def acquire(self, job: Job) -> ExecutionContext:
        ...

    def release(self, context: ExecutionContext) -> None:
        ...


class LocalRunnerProvider:
    """
    Runs every job on this machine.

    Each job gets `work_root/<job id>` as its workspace, or `work_root`
    itself when `in_place` is set. With `strict`, jobs whose runner this
    host can't serve raise RunnerUnavailable instead of running anyway.
    """

    def __init__(
        self,
        work_root: str | Path = DEFAULT_WORK_DIR,
        *,
        strict: bool = False,
        in_place: bool = False,
        host: Runner | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.work_root = Path(work_root).resolve()
        self.strict = strict
        self.in_place = in_place
        self.host = host if host is not None else host_runner()
        self.env = dict(env or {})

    def acquire(self, job: Job) -> ExecutionContext:
        if self.strict and (self.host is None or job.runner not in COMPATIBLE[self.host]):
            raise RunnerUnavailable(job=job.id, runner=job.runner.value,
                                    host=self.host.value if self.host else "unknown")

        workspace = self.work_root if self.in_place else self.work_root / job.id
        workspace.mkdir(parents=True, exist_ok=True)

        env = dict(self.env)
        env.update(job.env)
        env["PARALLELCI_JOB"] = job.id
        env["PARALLELCI_RUNNER"] = job.runner.value
        env["PARALLELCI_WORKSPACE"] = str(workspace)
        return ExecutionContext(job_id=job.id, runner=job.runner, workspace=workspace, env=env)

    def release(self, context: ExecutionContext) -> None:
        # workspaces are left on disk for inspection
        return None


# ----------------------------------------------------------------------
# Job Runner
# ----------------------------------------------------------------------

class JobRunner:
    """
    Runs one job's steps strictly in order.

    Stops at the first failing step; later steps never execute. Artifacts
    are handed to the collector only once every step has succeeded.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        collector: ArtifactCollector,
        *,
        console: Console | None = None,
        cancel: CancelToken | None = None,
        default_timeout: float | None = None,
    ):
        self.registry = registry
        self.collector = collector
        self.console = console or get_console()
        self.cancel = cancel or CancelToken()
        self.default_timeout = default_timeout

    def run(self, job: Job, context: ExecutionContext) -> RunOutcome:
        start = time.monotonic()
        self.console.print_job_start(job.id, job.runner.value)

        for index, step in enumerate(job.steps):
            if self.cancel.cancelled:
                return self._finish(RunOutcome.cancelled(job.id, index, duration=time.monotonic() - start))

            self.console.print_step(job.id, index, step.name)
            executor = StepExecutor(self.registry, default_timeout=self.default_timeout)
            result = executor.execute(step, context)

            if not result.succeeded:
                failure = StepFailure(
                    job=job.id,
                    step=step.name,
                    index=index,
                    detail=result.detail,
                    exit_code=result.exit_code,
                )
                self.console.print_step_failed(job.id, step.name, result.detail, result.exit_code, result.stderr)
                return self._finish(RunOutcome.failed(job.id, failure, duration=time.monotonic() - start))

            context.values.update(result.outputs)

        handles, warnings = self._collect_artifacts(job, context)
        return self._finish(
            RunOutcome.success(job.id, artifacts=handles, warnings=warnings, duration=time.monotonic() - start)
        )

    def _collect_artifacts(self, job: Job, context: ExecutionContext) -> Tuple[List[ArtifactHandle], List[str]]:
        handles: List[ArtifactHandle] = []
        warnings: List[str] = []
        for spec in job.artifacts:
            path = str(context.workspace / context.expand(spec.path))
            try:
                handle = self.collector.record(job.id, spec.name, path)
            except StorageError as e:
                # a storage problem never turns a green job red
                warnings.append(str(e))
                self.console.print_warning(str(e))
                continue
            handles.append(handle)
            self.console.print_artifact(job.id, spec.name, handle.location or handle.path)
        return handles, warnings

    def _finish(self, outcome: RunOutcome) -> RunOutcome:
        self.console.print_job_finished(outcome)
        return outcome
