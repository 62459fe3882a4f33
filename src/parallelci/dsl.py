# src/parallelci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import ValidationError
from .model import ArtifactSpec, DEFAULT_TRIGGERS, Job, Runner, Step, Workflow, resolve_runner


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, timeout: float | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, timeout=timeout)


def uses(
    name: str,
    action: str,
    inputs: Optional[Dict[str, Any]] = None,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    **kw_inputs: Any,
) -> Step:
    """
    Create a step that invokes a named action.

        uses("Toolchain", "setup-toolchain", toolchain="stable", target="x86_64-unknown-linux-gnu")

    Inputs whose names aren't valid identifiers go in `inputs`.
    """
    merged = dict(inputs or {})
    merged.update(kw_inputs)
    return Step(
        name=name,
        uses=action,
        inputs={k: str(v) for k, v in merged.items()},
        cwd=cwd,
        timeout=timeout,
    )


def upload(name: str, artifact: str, path: str) -> Step:
    """Declare an artifact; it is stored only if the whole job succeeds."""
    return Step(
        name=name,
        uses="upload-artifact",
        inputs={"name": artifact, "path": path},
        artifact=ArtifactSpec(name=artifact, path=path),
    )


def _runner(job_id: str, runs_on: Union[str, Runner]) -> Runner:
    if isinstance(runs_on, Runner):
        return runs_on
    runner = resolve_runner(runs_on)
    if runner is None:
        raise ValidationError(f"unknown runner '{runs_on}'", f"jobs.{job_id}.runs-on")
    return runner


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    runs_on: Union[str, Runner] = Runner.LINUX_X64,
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValidationError(f"job({name!r}) must have at least one step", f"jobs.{name}.steps")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        id=name,
        runner=_runner(name, runs_on),
        steps=steps_final,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._runs_on: Union[str, Runner] = Runner.LINUX_X64
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}

    def runs_on(self, runner: Union[str, Runner]):
        self._runs_on = runner
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, timeout: float | None = None):
        self._steps.append(sh(name, run, cwd=cwd, timeout=timeout))
        return self

    def use(self, name: str, action: str, **inputs: Any):
        self._steps.append(uses(name, action, **inputs))
        return self

    def upload(self, name: str, artifact: str, path: str):
        self._steps.append(upload(name, artifact, path))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValidationError(f"Job '{self.name}' has no steps", f"jobs.{self.name}.steps")
        return Job(
            id=self.name,
            runner=_runner(self.name, self._runs_on),
            steps=list(self._steps),
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("target", ["windows-x64", "linux-x64"]).jobs(
            lambda t: job(f"build-{t}", sh(...), runs_on=t)
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[Job, List[Job]],
    name: str = "workflow",
    on: Union[str, Iterable[str]] = DEFAULT_TRIGGERS,
    actions: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper. Matrix output can be passed straight in.

        from parallelci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                matrix(...).jobs(...),
                name="ci",
            )
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    triggers = (on,) if isinstance(on, str) else tuple(on)
    return Workflow(name=name, jobs=flat, triggers=triggers, actions=dict(actions or {}))
