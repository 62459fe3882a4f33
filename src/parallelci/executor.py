# executor.py
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict

from .actions import ActionCall, ActionRegistry, ActionResult
from .model import ExecutionContext, Step, StepOutcome

# How much of stdout/stderr we keep for diagnostics.
OUTPUT_TAIL = 4000

# Extra wait after a step's timeout, so process-backed actions get to kill
# their child and report before we give up on the call.
TIMEOUT_GRACE = 5.0


def _tail(text: str) -> str:
    return (text or "")[-OUTPUT_TAIL:]


class StepExecutor:
    """
    Runs exactly one step to completion.

    A Job Runner creates one of these per step and drops it afterwards.
    Any non-zero exit, raised exception, unknown action or timeout is a
    failed StepOutcome; nothing escapes as an exception.
    """

    def __init__(self, registry: ActionRegistry, *, default_timeout: float | None = None):
        self.registry = registry
        self.default_timeout = default_timeout

    def build_inputs(self, step: Step, context: ExecutionContext) -> Dict[str, str]:
        """Context values first, the step's own inputs on top, then `${{ }}` expansion."""
        merged: Dict[str, str] = dict(context.values)
        merged.update(step.inputs)
        if step.run is not None:
            merged["run"] = step.run
        return {k: context.expand(str(v)) for k, v in merged.items()}

    def execute(self, step: Step, context: ExecutionContext) -> StepOutcome:
        start = time.monotonic()
        action = self.registry.find(step.uses)
        if action is None:
            return StepOutcome(
                succeeded=False,
                detail=f"unknown action '{step.uses}' (known: {', '.join(self.registry.names())})",
            )

        inputs = self.build_inputs(step, context)
        missing = [k for k in action.required_inputs if not inputs.get(k)]
        if missing:
            return StepOutcome(
                succeeded=False,
                detail=f"action '{action.name}' missing required input(s): {', '.join(missing)}",
            )

        timeout = step.timeout if step.timeout is not None else self.default_timeout
        call = ActionCall(step_name=step.name, inputs=inputs, context=context, timeout=timeout, cwd=step.cwd)

        try:
            result = self._invoke(action.invoke, call, timeout)
        except FutureTimeout:
            return StepOutcome(
                succeeded=False,
                detail=f"timed out after {timeout:g}s",
                duration=time.monotonic() - start,
                timed_out=True,
            )
        except Exception as e:
            return StepOutcome(
                succeeded=False,
                detail=f"{type(e).__name__}: {e}",
                duration=time.monotonic() - start,
            )

        duration = time.monotonic() - start
        # finishing late counts the same as being killed at the deadline
        timed_out = result.timed_out or (timeout is not None and duration > timeout)
        if timed_out:
            detail = f"timed out after {timeout:g}s" if timeout is not None else "timed out"
        elif result.exit_code != 0:
            detail = _first_line(result.stderr) or f"exit status {result.exit_code}"
        else:
            detail = "ok"

        return StepOutcome(
            succeeded=result.ok and not timed_out,
            detail=detail,
            exit_code=result.exit_code,
            stdout=_tail(result.stdout),
            stderr=_tail(result.stderr),
            outputs=dict(result.outputs),
            duration=duration,
            timed_out=timed_out,
        )

    def _invoke(self, invoke, call: ActionCall, timeout: float | None) -> ActionResult:
        if timeout is None:
            return invoke(call)

        # Actions that don't honour call.timeout themselves are abandoned
        # (not interrupted) once the deadline passes.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"step-{call.context.job_id}")
        try:
            fut = pool.submit(invoke, call)
            return fut.result(timeout=timeout + TIMEOUT_GRACE)
        finally:
            pool.shutdown(wait=False)


def _first_line(text: str) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""
