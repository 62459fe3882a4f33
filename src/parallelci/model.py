# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import StepFailure


class Runner(str, Enum):
    """Execution environment classes a job can target."""
    WINDOWS_X64 = "windows-x64"
    WINDOWS_X86 = "windows-x86"
    LINUX_X64 = "linux-x64"
    LINUX_ARM64 = "linux-arm64"
    MACOS_X64 = "macos-x64"
    MACOS_ARM64 = "macos-arm64"

    def __str__(self) -> str:
        return self.value


# Hosted-runner labels people already write in their workflow files.
RUNNER_ALIASES: Dict[str, Runner] = {
    "windows-latest": Runner.WINDOWS_X64,
    "ubuntu-latest": Runner.LINUX_X64,
    "macos-latest": Runner.MACOS_X64,
}

_ALIAS_PATTERNS: List[Tuple[re.Pattern, Runner]] = [
    (re.compile(r"^windows-\d{4}$"), Runner.WINDOWS_X64),
    (re.compile(r"^ubuntu-\d{2}\.\d{2}$"), Runner.LINUX_X64),
    (re.compile(r"^macos-\d+(\.\d+)?$"), Runner.MACOS_X64),
]


def resolve_runner(label: str) -> Optional[Runner]:
    """Map a runner label (canonical or alias) to a Runner, or None if unknown."""
    label = (label or "").strip().lower()
    try:
        return Runner(label)
    except ValueError:
        pass
    if label in RUNNER_ALIASES:
        return RUNNER_ALIASES[label]
    for pattern, runner in _ALIAS_PATTERNS:
        if pattern.match(label):
            return runner
    return None


DEFAULT_ACTION = "run"
DEFAULT_TRIGGERS = ("push", "pull_request")


@dataclass(frozen=True)
class ArtifactSpec:
    """A named output a step declares; `path` is a glob relative to the workspace."""
    name: str
    path: str


@dataclass(frozen=True)
class Step:
    """A single action invocation inside a job."""
    name: str
    uses: str = DEFAULT_ACTION
    run: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    artifact: ArtifactSpec | None = None
    timeout: float | None = None
    cwd: str | None = None

    @property
    def is_command(self) -> bool:
        return self.uses == DEFAULT_ACTION


@dataclass
class Job:
    """A CI job: one runner, ordered steps."""
    id: str
    runner: Runner
    steps: list[Step]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def artifacts(self) -> list[ArtifactSpec]:
        return [s.artifact for s in self.steps if s.artifact is not None]


@dataclass
class Workflow:
    name: str
    jobs: list[Job]
    triggers: Tuple[str, ...] = DEFAULT_TRIGGERS
    # workflow-local command-backed actions: name -> shell command
    actions: Dict[str, str] = field(default_factory=dict)

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def triggered_by(self, event: str) -> bool:
        return event in self.triggers


_EXPR = re.compile(r"\$\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


@dataclass
class ExecutionContext:
    """
    Per-job execution state handed to every step of that job.

    `values` accumulates outputs of earlier steps (e.g. a resolved toolchain
    path) so later steps can consume them.
    """
    job_id: str
    runner: Runner
    workspace: Path
    env: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, str] = field(default_factory=dict)

    def lookup(self, key: str) -> Optional[str]:
        if key == "job":
            return self.job_id
        if key == "runner":
            return self.runner.value
        if key == "workspace":
            return str(self.workspace)
        if key.startswith("env."):
            return self.env.get(key[4:])
        return self.values.get(key)

    def expand(self, text: str) -> str:
        """Substitute `${{ name }}` references; unknown names are left as-is."""
        def repl(m: re.Match) -> str:
            value = self.lookup(m.group(1))
            return m.group(0) if value is None else value

        return _EXPR.sub(repl, text)


# ----------------------------------------------------------------------
# Outcomes
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StepOutcome:
    succeeded: bool
    detail: str = ""
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    outputs: Mapping[str, str] = field(default_factory=dict)
    duration: float = 0.0
    timed_out: bool = False


@dataclass(frozen=True)
class ArtifactHandle:
    job_id: str
    name: str
    path: str
    location: str = ""

    def to_dict(self) -> dict:
        return {"job": self.job_id, "name": self.name, "path": self.path, "location": self.location}


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RunOutcome:
    """Terminal result of one job. Created once, never mutated."""
    job_id: str
    status: OutcomeStatus
    step_index: int | None = None
    failure: StepFailure | None = None
    reason: str = ""
    artifacts: Tuple[ArtifactHandle, ...] = ()
    warnings: Tuple[str, ...] = ()
    duration: float = 0.0

    @classmethod
    def success(cls, job_id: str, *, artifacts=(), warnings=(), duration: float = 0.0) -> RunOutcome:
        return cls(job_id, OutcomeStatus.SUCCESS, artifacts=tuple(artifacts),
                   warnings=tuple(warnings), duration=duration)

    @classmethod
    def failed(cls, job_id: str, failure: StepFailure, *, duration: float = 0.0) -> RunOutcome:
        return cls(job_id, OutcomeStatus.FAILED, step_index=failure.index,
                   failure=failure, duration=duration)

    @classmethod
    def skipped(cls, job_id: str, reason: str) -> RunOutcome:
        return cls(job_id, OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def cancelled(cls, job_id: str, step_index: int, *, duration: float = 0.0) -> RunOutcome:
        return cls(job_id, OutcomeStatus.CANCELLED, step_index=step_index,
                   reason=f"cancelled before step {step_index}", duration=duration)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def detail(self) -> str:
        if self.failure is not None:
            return str(self.failure)
        return self.reason

    def to_dict(self) -> dict:
        d: dict = {"job": self.job_id, "status": self.status.value, "duration": round(self.duration, 3)}
        if self.step_index is not None:
            d["step_index"] = self.step_index
        if self.failure is not None:
            d["step"] = self.failure.step
            d["exit_code"] = self.failure.exit_code
            d["detail"] = self.failure.detail
        elif self.reason:
            d["detail"] = self.reason
        if self.artifacts:
            d["artifacts"] = [a.to_dict() for a in self.artifacts]
        if self.warnings:
            d["warnings"] = list(self.warnings)
        return d


@dataclass(frozen=True)
class WorkflowReport:
    """Aggregated outcome of one workflow execution, in job declaration order."""
    workflow: str
    outcomes: Tuple[RunOutcome, ...]

    @property
    def succeeded(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def status(self) -> OutcomeStatus:
        return OutcomeStatus.SUCCESS if self.succeeded else OutcomeStatus.FAILED

    @property
    def failed_jobs(self) -> list[str]:
        return [o.job_id for o in self.outcomes if not o.ok]

    @property
    def artifacts(self) -> list[ArtifactHandle]:
        return [a for o in self.outcomes for a in o.artifacts]

    def outcome(self, job_id: str) -> RunOutcome:
        for o in self.outcomes:
            if o.job_id == job_id:
                return o
        raise KeyError(job_id)

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow,
            "status": self.status.value,
            "failed_jobs": self.failed_jobs,
            "jobs": [o.to_dict() for o in self.outcomes],
        }
