# scheduler.py
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Dict, List

from .actions import ActionRegistry
from .artifacts import ArtifactCollector
from .errors import RunnerUnavailable, SchedulerError
from .model import Job, OutcomeStatus, RunOutcome, Workflow, WorkflowReport
from .runner import CancelToken, JobRunner, LocalRunnerProvider, RunnerProvider
from .ui.console import Console, get_console


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


_TERMINAL = {
    OutcomeStatus.SUCCESS: JobState.SUCCESS,
    OutcomeStatus.FAILED: JobState.FAILED,
    OutcomeStatus.SKIPPED: JobState.SKIPPED,
    OutcomeStatus.CANCELLED: JobState.CANCELLED,
}


class Scheduler:
    """
    Runs every job of a workflow in parallel and aggregates the results.

    - Jobs are independent: none waits on another, there is no ordering.
    - One thread of control per job (bounded by max_workers).
    - Waits for all jobs to reach a terminal outcome, then builds the report.
    - Never retries.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        collector: ArtifactCollector | None = None,
        *,
        runners: RunnerProvider | None = None,
        max_workers: int | None = None,
        console: Console | None = None,
        default_timeout: float | None = None,
    ):
        self.registry = registry
        self.collector = collector or ArtifactCollector()
        self.runners = runners or LocalRunnerProvider()
        self.max_workers = max_workers
        self.console = console or get_console()
        self.default_timeout = default_timeout

        self._states_lock = threading.Lock()
        self._states: Dict[str, JobState] = {}

    @property
    def states(self) -> Dict[str, JobState]:
        """Snapshot of per-job state for the current/last execution."""
        with self._states_lock:
            return dict(self._states)

    def _set_state(self, job_id: str, state: JobState) -> None:
        with self._states_lock:
            self._states[job_id] = state

    def execute(self, workflow: Workflow, cancel: CancelToken | None = None) -> WorkflowReport:
        jobs = list(workflow.jobs)
        names = [j.id for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise SchedulerError("Duplicate job ids reached the scheduler", {"jobs": dupes})

        cancel = cancel or CancelToken()
        with self._states_lock:
            self._states = {name: JobState.PENDING for name in names}

        if not jobs:
            return WorkflowReport(workflow=workflow.name, outcomes=())

        workers = self.max_workers or len(jobs)
        workers = max(1, min(workers, len(jobs)))
        self.console.print_debug(f"scheduling {len(jobs)} job(s) on {workers} worker(s)")

        results: Dict[str, RunOutcome] = {}
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="parallelci-job")
        try:
            # submitted in declaration order; a bounded pool starts them in that order
            futures = {pool.submit(self._run_job, job, cancel): job.id for job in jobs}

            for future in as_completed(futures):
                job_id = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self.console.print_exception(e)
                    outcome = RunOutcome(job_id, OutcomeStatus.FAILED, reason=f"{type(e).__name__}: {e}")
                    self._set_state(job_id, JobState.FAILED)
                results[job_id] = outcome
        except KeyboardInterrupt:
            # abort: drop queued jobs and stop waiting for the ones in flight
            cancel.cancel("aborted by user")
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

        missing: List[str] = [n for n in names if n not in results]
        if missing:
            raise SchedulerError("Jobs finished without an outcome", {"jobs": missing})

        return WorkflowReport(workflow=workflow.name, outcomes=tuple(results[n] for n in names))

    def _run_job(self, job: Job, cancel: CancelToken) -> RunOutcome:
        if cancel.cancelled:
            self._set_state(job.id, JobState.SKIPPED)
            outcome = RunOutcome.skipped(job.id, f"not started: {cancel.reason}")
            self.console.print_job_finished(outcome)
            return outcome

        try:
            context = self.runners.acquire(job)
        except RunnerUnavailable as e:
            self._set_state(job.id, JobState.SKIPPED)
            outcome = RunOutcome.skipped(job.id, str(e))
            self.console.print_job_finished(outcome)
            return outcome

        self._set_state(job.id, JobState.RUNNING)
        runner = JobRunner(
            self.registry,
            self.collector,
            console=self.console,
            cancel=cancel,
            default_timeout=self.default_timeout,
        )
        try:
            outcome = runner.run(job, context)
        finally:
            self.runners.release(context)

        self._set_state(job.id, _TERMINAL[outcome.status])
        return outcome
