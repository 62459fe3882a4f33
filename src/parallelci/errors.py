# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class CIError(Exception):
    """Base class for every error raised by parallelci."""


@dataclass
class ValidationError(CIError):
    """
    The workflow definition is malformed.

    Raised before any job runs; no partial workflow is ever returned.
    """
    reason: str
    location: str = ""

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.reason}"
        return self.reason


@dataclass
class StepFailure(CIError):
    """A step's action returned failure, raised, or timed out."""
    job: str
    step: str
    index: int
    detail: str
    exit_code: int | None = None

    def __str__(self) -> str:
        code = "" if self.exit_code is None else f" (exit={self.exit_code})"
        return f"[{self.job}] step {self.index} '{self.step}' failed{code}: {self.detail}"


@dataclass
class StorageError(CIError):
    """The artifact sink could not store an artifact."""
    job: str
    name: str
    message: str

    def __str__(self) -> str:
        return f"[{self.job}] artifact '{self.name}' not stored: {self.message}"


@dataclass
class SchedulerError(CIError):
    """Internal invariant violation inside the scheduler. Indicates a defect."""
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class RunnerUnavailable(CIError):
    """No execution environment matching the job's runner descriptor."""
    job: str
    runner: str
    host: str = ""

    def __str__(self) -> str:
        msg = f"[{self.job}] no runner available for {self.runner}"
        if self.host:
            msg += f" (host is {self.host})"
        return msg
