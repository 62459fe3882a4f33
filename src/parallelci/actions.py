# actions.py
from __future__ import annotations

import os
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional

from .artifacts import expand_paths
from .model import DEFAULT_ACTION, ExecutionContext

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Checkout, toolchain setup, build/test/lint commands and uploads are all
# the same thing to the orchestrator: an external action looked up by name
# and invoked with string inputs plus the job's execution context.
#
#   action = registry.resolve("actions/checkout@v2")
#   result = action.invoke(ActionCall(...))
#
# Actions can publish outputs for later steps by writing `key=value` lines
# to the file named by $PARALLELCI_OUTPUT.
# ---------------------------------------------------------------------

OUTPUT_ENV = "PARALLELCI_OUTPUT"

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
}


@dataclass(frozen=True)
class ActionCall:
    step_name: str
    inputs: Mapping[str, str]
    context: ExecutionContext
    timeout: float | None = None
    cwd: str | None = None


@dataclass(frozen=True)
class ActionResult:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    outputs: Mapping[str, str] = field(default_factory=dict)
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(frozen=True)
class Action:
    """An external action identified by name."""
    name: str
    invoke: Callable[[ActionCall], ActionResult]
    required_inputs: tuple[str, ...] = ()
    description: str = ""


def normalize_name(name: str) -> str:
    """`actions/checkout@v2` -> `actions/checkout`."""
    return (name or "").strip().split("@", 1)[0]


class ActionRegistry:
    """
    Name -> Action lookup.

    Built once at startup and handed to the scheduler; nothing in parallelci
    reaches for a global registry.
    """

    def __init__(self, actions: Iterable[Action] = ()):
        self._actions: Dict[str, Action] = {}
        for a in actions:
            self.register(a)

    def register(self, action: Action, *, replace: bool = False) -> Action:
        key = normalize_name(action.name)
        if not key:
            raise ValueError("action name must be non-empty")
        if key in self._actions and not replace:
            raise ValueError(f"Action already registered: {key}")
        self._actions[key] = action
        return action

    def find(self, name: str) -> Optional[Action]:
        key = normalize_name(name)
        if key in self._actions:
            return self._actions[key]
        # `owner/checkout` falls back to a plain `checkout` registration
        short = key.rsplit("/", 1)[-1]
        return self._actions.get(short)

    def resolve(self, name: str) -> Action:
        action = self.find(name)
        if action is None:
            raise KeyError(f"Unknown action '{name}'. Known actions: {self.names()}")
        return action

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.find(name) is not None

    def names(self) -> list[str]:
        return sorted(self._actions)

    def copy(self) -> ActionRegistry:
        return ActionRegistry(self._actions.values())


# ---------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------

def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _resolve_cwd(call: ActionCall) -> Path:
    cwd = (call.context.workspace / (call.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{call.context.job_id}] step '{call.step_name}' cwd not found: {cwd}")
    return cwd


def _read_outputs(path: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            outputs[key.strip()] = value.strip()
    return outputs


def run_process(
    call: ActionCall,
    args: str | list[str],
    *,
    shell: bool = False,
    extra_env: Mapping[str, str] | None = None,
) -> ActionResult:
    """Run a process for an action; kills it when the call's timeout passes."""
    cwd = _resolve_cwd(call)
    output_file = call.context.workspace / f".parallelci-output-{uuid.uuid4().hex}"

    env = os.environ.copy()
    env.update(call.context.env)
    env.update(extra_env or {})
    env[OUTPUT_ENV] = str(output_file)

    try:
        proc = subprocess.run(
            args,
            shell=shell,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
            timeout=call.timeout,
        )
    except subprocess.TimeoutExpired as e:
        return ActionResult(
            exit_code=-1,
            stdout=_text(e.stdout),
            stderr=_text(e.stderr),
            timed_out=True,
        )
    finally:
        outputs = _read_outputs(output_file)
        output_file.unlink(missing_ok=True)

    return ActionResult(
        exit_code=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        outputs=outputs,
    )


def input_env(inputs: Mapping[str, str]) -> Dict[str, str]:
    """Inputs exported the way hosted CI exports them: `INPUT_<NAME>`."""
    return {
        "INPUT_" + k.upper().replace("-", "_").replace(" ", "_"): str(v)
        for k, v in inputs.items()
    }


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def _run_shell(call: ActionCall) -> ActionResult:
    return run_process(call, call.inputs["run"], shell=True)


def _run_docker(call: ActionCall) -> ActionResult:
    """Run `run` inside `image`, with the job workspace mounted at /workspace."""
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ActionResult(exit_code=127, stderr=f"docker is not available. {TOOL_HINTS['docker']}")

    container_workdir = "/workspace"
    cmd = ["docker", "run", "--rm", "-v", f"{call.context.workspace.resolve()}:{container_workdir}"]

    for vol in filter(None, (call.inputs.get("volumes") or "").split(",")):
        cmd.extend(["-v", vol.strip()])

    container_cwd = f"{container_workdir}/{call.cwd or '.'}".replace("//", "/")
    cmd.extend(["-w", container_cwd])

    for key, value in call.context.env.items():
        cmd.extend(["-e", f"{key}={value}"])

    if call.inputs.get("user"):
        cmd.extend(["--user", call.inputs["user"]])

    cmd.append(call.inputs["image"])
    cmd.extend(["sh", "-c", call.inputs["run"]])

    # the host-side cwd is the workspace root; -w handles the rest
    return run_process(
        ActionCall(call.step_name, call.inputs, call.context, call.timeout, cwd=None),
        cmd,
    )


def _upload_artifact(call: ActionCall) -> ActionResult:
    """
    Check that the artifact's files exist. Storing them is the collector's
    job, and only happens once the whole job has succeeded.
    """
    name = call.inputs["name"]
    pattern = call.inputs["path"]
    # matched the same way the collector will match it after the job
    matches = expand_paths(str(call.context.workspace / pattern))
    if not matches:
        return ActionResult(
            exit_code=1,
            stderr=f"artifact '{name}': no files match '{pattern}' in {call.context.workspace}",
        )
    return ActionResult(
        stdout="\n".join(str(p) for p in matches),
        outputs={f"artifact.{name}": str(matches[0])},
    )


def command_action(name: str, command: str, *, description: str = "") -> Action:
    """
    Wrap an external command as a named action.

    Step inputs reach the command as INPUT_<NAME> environment variables and
    `${{ ... }}` references in `command` are expanded from the context.
    """
    def invoke(call: ActionCall) -> ActionResult:
        return run_process(
            call,
            call.context.expand(command),
            shell=True,
            extra_env=input_env(call.inputs),
        )

    return Action(name=name, invoke=invoke, description=description or command)


def default_registry(commands: Mapping[str, str] | None = None) -> ActionRegistry:
    """The built-in actions plus any command-backed ones."""
    registry = ActionRegistry([
        Action(DEFAULT_ACTION, _run_shell, ("run",), "Run a shell command"),
        Action("docker", _run_docker, ("image", "run"), "Run a command inside a container"),
        Action("upload-artifact", _upload_artifact, ("name", "path"), "Declare a job artifact"),
    ])
    for action_name, cmd in (commands or {}).items():
        registry.register(command_action(action_name, cmd), replace=True)
    return registry
