# workflow.py
from __future__ import annotations

import json
import re
import runpy
from collections.abc import Hashable
from pathlib import Path
from typing import Any, Collection, Dict, List, Mapping, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

from .actions import ActionRegistry, normalize_name
from .errors import ValidationError
from .model import (
    ArtifactSpec,
    DEFAULT_ACTION,
    DEFAULT_TRIGGERS,
    Job,
    Runner,
    Step,
    Workflow,
    resolve_runner,
)

# ids and artifact names end up as path components; "." and ".." are refused
JOB_ID_RE = re.compile(r"^(?!\.+$)[A-Za-z0-9_.\-]+$")
DOCUMENT_SUFFIXES = (".yml", ".yaml", ".json")


# ----------------------------------------------------------------------
# Raw document schema
# ----------------------------------------------------------------------

def _scalar_to_str(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _stringify_mapping(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _scalar_to_str(v) for k, v in value.items()}
    return value


class ArtifactDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    path: str


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    artifact: Optional[ArtifactDoc] = None
    timeout: Optional[float] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @field_validator("with_", mode="before")
    @classmethod
    def stringify_inputs(cls, v: Any) -> Any:
        return _stringify_mapping(v)


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = None
    runs_on: str = Field(alias="runs-on")
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        return _stringify_mapping(v)


class WorkflowDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "workflow"
    on: List[str] = Field(default_factory=lambda: list(DEFAULT_TRIGGERS))
    actions: Dict[str, str] = Field(default_factory=dict)
    jobs: List[JobDoc] = Field(default_factory=list)


def _normalize_document(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Bring accepted shorthands into the one shape WorkflowDoc validates:
      - YAML 1.1 reads a bare `on:` key as boolean True
      - `on` may be a string, list or mapping of events
      - `jobs` may be a list of {id, ...} or a mapping id -> {...}
    """
    doc = dict(raw)
    if True in doc:
        doc["on"] = doc.pop(True)

    on = doc.get("on")
    if isinstance(on, str):
        doc["on"] = [on]
    elif isinstance(on, dict):
        doc["on"] = [str(k) for k in on]

    jobs = doc.get("jobs")
    if isinstance(jobs, dict):
        as_list = []
        for job_id, body in jobs.items():
            if not isinstance(body, dict):
                raise ValidationError(f"job definition must be a mapping, got {type(body).__name__}", f"jobs.{job_id}")
            if "id" in body and body["id"] != job_id:
                raise ValidationError(f"id '{body['id']}' does not match key '{job_id}'", f"jobs.{job_id}.id")
            as_list.append({"id": str(job_id), **body})
        doc["jobs"] = as_list
    return doc


def _location(loc: Sequence[Any], job_ids: List[Optional[str]]) -> str:
    parts: List[str] = []
    items = list(loc)
    # jobs[3] -> jobs.build-linux when the id is known
    if len(items) >= 2 and items[0] == "jobs" and isinstance(items[1], int):
        idx = items[1]
        job_id = job_ids[idx] if idx < len(job_ids) else None
        parts.append(f"jobs.{job_id}" if job_id else f"jobs[{idx}]")
        items = items[2:]
    for item in items:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(("." if parts else "") + str(item))
    return "".join(parts)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _step_from_doc(doc: StepDoc, where: str) -> Step:
    if doc.uses is None and doc.run is None:
        raise ValidationError("step needs either 'run' or 'uses'", where)
    if doc.uses is not None and doc.run is not None:
        raise ValidationError("step cannot have both 'run' and 'uses'", where)
    if doc.timeout is not None and doc.timeout_minutes is not None:
        raise ValidationError("use either 'timeout' or 'timeout-minutes', not both", where)

    timeout = doc.timeout
    if doc.timeout_minutes is not None:
        timeout = doc.timeout_minutes * 60

    if doc.run is not None:
        uses, run = DEFAULT_ACTION, doc.run
        default_name = (doc.run.strip().splitlines() or [""])[0]
    else:
        uses, run = doc.uses.strip(), None
        default_name = uses

    artifact = None
    if doc.artifact is not None:
        artifact = ArtifactSpec(name=doc.artifact.name, path=doc.artifact.path)
    elif normalize_name(uses).endswith("upload-artifact") and "name" in doc.with_ and "path" in doc.with_:
        artifact = ArtifactSpec(name=doc.with_["name"], path=doc.with_["path"])

    return Step(
        name=doc.name or default_name,
        uses=uses,
        run=run,
        inputs=dict(doc.with_),
        artifact=artifact,
        timeout=timeout,
        cwd=doc.working_directory,
    )


def parse(raw: Mapping[str, Any], *, known_actions: Collection[str] | None = None) -> Workflow:
    """
    Turn a raw workflow document (already loaded from YAML/JSON) into a
    validated Workflow.

    Raises ValidationError on the first problem found; never returns a
    partially valid workflow.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(f"workflow document must be a mapping, got {type(raw).__name__}")

    normalized = _normalize_document(raw)
    raw_jobs = normalized.get("jobs") if isinstance(normalized.get("jobs"), list) else []
    job_ids = [j.get("id") if isinstance(j, dict) else None for j in raw_jobs]

    try:
        doc = WorkflowDoc.model_validate(normalized)
    except SchemaError as e:
        first = e.errors()[0]
        raise ValidationError(first["msg"], _location(first["loc"], job_ids)) from e

    jobs: List[Job] = []
    for i, jd in enumerate(doc.jobs):
        where = f"jobs.{jd.id}" if jd.id else f"jobs[{i}]"
        runner = resolve_runner(jd.runs_on)
        if runner is None:
            raise ValidationError(
                f"unknown runner '{jd.runs_on}' (known: {', '.join(r.value for r in Runner)})",
                f"{where}.runs-on",
            )
        steps = [_step_from_doc(sd, f"{where}.steps[{j}]") for j, sd in enumerate(jd.steps)]
        jobs.append(Job(id=(jd.id or "").strip(), runner=runner, steps=steps, env=dict(jd.env)))

    workflow = Workflow(
        name=doc.name,
        jobs=jobs,
        triggers=tuple(doc.on),
        actions=dict(doc.actions),
    )
    validate(workflow, known_actions=known_actions)
    return workflow


# ----------------------------------------------------------------------
# Validation (shared by documents and the Python DSL)
# ----------------------------------------------------------------------

def _knows(known: Collection[str], name: str) -> bool:
    if isinstance(known, ActionRegistry):
        return name in known
    key = normalize_name(name)
    return key in known or key.rsplit("/", 1)[-1] in known


def validate(workflow: Workflow, *, known_actions: Collection[str] | None = None) -> Workflow:
    """Check every invariant of a workflow; raise ValidationError on the first violation."""
    if not workflow.jobs:
        raise ValidationError("workflow has no jobs", "jobs")

    for name, command in workflow.actions.items():
        if not name.strip():
            raise ValidationError("action name must be non-empty", "actions")
        if not (command or "").strip():
            raise ValidationError("action command must be non-empty", f"actions.{name}")

    seen: Dict[str, int] = {}
    for i, job in enumerate(workflow.jobs):
        where = f"jobs[{i}]"
        if not job.id or not job.id.strip():
            raise ValidationError("job id must be non-empty", f"{where}.id")
        if not JOB_ID_RE.match(job.id):
            raise ValidationError(
                f"job id '{job.id}' may only contain letters, digits, '-', '_' and '.'", f"{where}.id"
            )
        if job.id in seen:
            raise ValidationError(
                f"duplicate job id '{job.id}' (first defined at jobs[{seen[job.id]}])", f"{where}.id"
            )
        seen[job.id] = i
        where = f"jobs.{job.id}"

        if not isinstance(job.runner, Runner):
            raise ValidationError(f"unknown runner '{job.runner}'", f"{where}.runs-on")
        if not job.steps:
            raise ValidationError("job must have at least one step", f"{where}.steps")

        artifact_names: set[str] = set()
        for j, step in enumerate(job.steps):
            at = f"{where}.steps[{j}]"
            if step.is_command:
                if not (step.run or "").strip():
                    raise ValidationError("command must be non-empty", f"{at}.run")
            elif not (step.uses or "").strip():
                raise ValidationError("action name must be non-empty", f"{at}.uses")
            elif known_actions is not None and not (
                _knows(known_actions, step.uses) or normalize_name(step.uses) in workflow.actions
            ):
                raise ValidationError(f"unknown action '{step.uses}'", f"{at}.uses")

            if step.timeout is not None and step.timeout <= 0:
                raise ValidationError("timeout must be positive", f"{at}.timeout")

            if step.artifact is not None:
                if not step.artifact.name.strip() or not step.artifact.path.strip():
                    raise ValidationError("artifact needs a non-empty name and path", f"{at}.artifact")
                # names become file names under the artifact root
                if not JOB_ID_RE.match(step.artifact.name):
                    raise ValidationError(
                        f"artifact name '{step.artifact.name}' may only contain letters, digits, '-', '_' and '.'",
                        f"{at}.artifact",
                    )
                if step.artifact.name in artifact_names:
                    raise ValidationError(f"duplicate artifact name '{step.artifact.name}'", f"{at}.artifact")
                artifact_names.add(step.artifact.name)

    return workflow


# ----------------------------------------------------------------------
# Loading from disk
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value in node.value:
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, Hashable):
                if key in seen:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping", node.start_mark,
                        f"found duplicate key {key!r}", key_node.start_mark,
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _no_duplicate_pairs(pairs):
    out = {}
    for k, v in pairs:
        if k in out:
            raise ValidationError(f"duplicate key '{k}'")
        out[k] = v
    return out


def load_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        try:
            return json.loads(text, object_pairs_hook=_no_duplicate_pairs)
        except json.JSONDecodeError as e:
            raise ValidationError(e.msg, f"{path.name}:{e.lineno}:{e.colno}") from e
        except ValidationError as e:
            raise ValidationError(e.reason, path.name) from e
    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark
        where = f"{path.name}:{mark.line + 1}:{mark.column + 1}" if mark else path.name
        raise ValidationError(e.problem or str(e), where) from e
    except yaml.YAMLError as e:
        raise ValidationError(str(e), path.name) from e


def _load_python(path: Path) -> Workflow:
    """
    A .py workflow defines either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...) or JOBS = [Job, ...]
    """
    globals_dict = runpy.run_path(str(path), run_name=f"parallelci_workflow_{path.stem}")

    result: Any = None
    if callable(globals_dict.get("workflow")):
        result = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Workflow):
        return result
    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        return Workflow(name=path.stem, jobs=result)
    raise ValidationError(
        "Python workflow must define workflow() returning a Workflow (or List[Job]), "
        "or WORKFLOW / JOBS at module level",
        path.name,
    )


def load_workflow(path: str | Path, *, known_actions: Collection[str] | None = None) -> Workflow:
    """Load and validate a workflow from a .yml/.yaml/.json document or a .py file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return validate(_load_python(wf_path), known_actions=known_actions)
    if wf_path.suffix in DOCUMENT_SUFFIXES:
        raw = load_document(wf_path)
        if raw is None:
            raise ValidationError("workflow document is empty", wf_path.name)
        if isinstance(raw, Mapping) and "name" not in raw:
            raw = {"name": wf_path.stem, **raw}
        return parse(raw, known_actions=known_actions)
    raise ValidationError(
        f"unsupported workflow file type '{wf_path.suffix}' (use .py, .yml, .yaml or .json)",
        wf_path.name,
    )
