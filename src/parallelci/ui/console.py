"""Console output formatting utilities for parallelci."""

from __future__ import annotations

import sys
import threading
from typing import IO, Optional

from ..model import RunOutcome, WorkflowReport


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, stream: Optional[IO[str]] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where progress lines go (defaults to stdout)
        """
        self.debug = debug
        self.stream = stream
        self._lock = threading.Lock()

    def _emit(self, text: str, *, err: bool = False) -> None:
        out = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            print(text, file=out, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}\n" + "-" * len(title))

    def print_run_started(self, workflow: str, job_count: int, workers: Optional[int] = None) -> None:
        """Print run start information."""
        lines = ["", "RUN STARTED", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if workers:
            lines.append(f"Workers: {workers}")
        self._emit("\n".join(lines) + "\n")

    def print_job_start(self, job: str, runner: str) -> None:
        self._emit(f"[{job}] JOB STARTED on {runner}")

    def print_step(self, job: str, index: int, name: str) -> None:
        self._emit(f"[{job}] ▶ {index}: {name}")

    def print_step_failed(
        self,
        job: str,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        """
        Print step failure.

        In debug mode the captured stderr tail is shown as well.
        """
        code = f" (exit={exit_code})" if exit_code is not None else ""
        self._emit(f"[{job}] STEP FAILED: {name}{code}")
        self._emit(f"[{job}] Error: {reason}")
        if self.debug and stderr:
            for line in stderr.rstrip().splitlines():
                self._emit(f"[{job}] | {line}")

    def print_job_finished(self, outcome: RunOutcome) -> None:
        status = outcome.status.value.upper()
        suffix = f" ({outcome.reason})" if outcome.reason else ""
        self._emit(f"[{outcome.job_id}] JOB {status}{suffix}")

    def print_artifact(self, job: str, name: str, location: str) -> None:
        self._emit(f"[{job}] ARTIFACT: {name} -> {location}")

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_results(self, report: WorkflowReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for o in report.outcomes:
            line = f"  {o.job_id}: {o.status.value.upper()}"
            if o.step_index is not None:
                line += f" at step {o.step_index}"
            lines.append(line)
        lines.append("-" * 40)
        lines.append(f"WORKFLOW: {report.status.value.upper()}")
        if report.failed_jobs:
            lines.append(f"Failed jobs: {', '.join(report.failed_jobs)}")
        self._emit("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Process console (set by the CLI). Library code takes a Console argument.
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
