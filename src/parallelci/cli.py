# cli.py
from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

import click

from parallelci.actions import default_registry
from parallelci.artifacts import ArtifactCollector, DirectorySink
from parallelci.config import load_settings
from parallelci.errors import SchedulerError, ValidationError
from parallelci.model import Workflow
from parallelci.runner import CancelToken, LocalRunnerProvider
from parallelci.scheduler import Scheduler
from parallelci.ui.console import Console, set_console, get_console
from parallelci.workflow import DOCUMENT_SUFFIXES, load_workflow, validate

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERNAL = 3
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOW_NAMES = ("parallelci.yml", "parallelci.yaml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")

    for name in DEFAULT_WORKFLOW_NAMES:
        default_workflow = current_dir / name
        if default_workflow.exists():
            return [default_workflow]

    workflow_files: list[Path] = []
    for suffix in (".py", *DOCUMENT_SUFFIXES):
        workflow_files.extend(current_dir.glob(f"*_workflow{suffix}"))
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  parallelci run --workflow ci_workflow.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                *(f"  {n}" for n in DEFAULT_WORKFLOW_NAMES),
                "  *_workflow.py / *_workflow.yml / *_workflow.yaml / *_workflow.json",
            ],
            suggestion="Create parallelci.yml or specify a workflow explicitly:\n  parallelci run --workflow ci_workflow.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  parallelci run --workflow ci_workflow.yml",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def parse_action_options(values: tuple[str, ...]) -> dict[str, str]:
    """`--action checkout='git clone ...'` -> {"checkout": "git clone ..."}"""
    commands: dict[str, str] = {}
    for raw in values:
        name, sep, command = raw.partition("=")
        if not sep or not name.strip() or not command.strip():
            raise click.BadParameter(f"expected NAME=COMMAND, got {raw!r}", param_hint="--action")
        commands[name.strip()] = command
    return commands


def load_or_exit(workflow_path: Path, commands: dict[str, str]):
    """Load + validate a workflow against the action registry it will run with."""
    console = get_console()
    try:
        wf = load_workflow(workflow_path)
        registry = default_registry({**wf.actions, **commands})
        validate(wf, known_actions=registry)
    except ValidationError as e:
        console.print_error(
            "Invalid workflow",
            f"{workflow_path}: {e.reason}",
            details=[f"at {e.location}"] if e.location else None,
        )
        sys.exit(EXIT_INVALID)
    except FileNotFoundError as e:
        console.print_error("Workflow file not found", str(e))
        sys.exit(EXIT_INVALID)
    except Exception as e:
        # errors raised while executing a .py workflow
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_INVALID)
    return wf, registry


class _InterruptHandler:
    """
    First Ctrl-C cancels cooperatively. A second one abandons the report:
    queued jobs are dropped and the process exits as soon as the steps in
    flight return (their processes get the same SIGINT from the terminal).
    """

    def __init__(self, cancel: CancelToken):
        self.cancel = cancel
        self.previous = None

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self.previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous is not None:
            signal.signal(signal.SIGINT, self.previous)

    def _handle(self, signum, frame):
        if self.cancel.cancelled:
            raise KeyboardInterrupt
        get_console().print_info("\nInterrupt received: finishing running steps, skipping the rest (Ctrl-C again to abort without a report)")
        self.cancel.cancel("interrupted by user")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """parallelci: run independent build/test/lint jobs in parallel."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", "-w", default=None, help="Workflow file (defaults to parallelci.yml or a single *_workflow.* file)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max jobs running at once (default: one per job)")
@click.option("--work-dir", default=None, type=click.Path(file_okay=False), help="Root for per-job workspaces")
@click.option("--in-place", is_flag=True, default=False, help="Run every job directly in --work-dir instead of a per-job subdirectory")
@click.option("--artifact-dir", default=None, type=click.Path(file_okay=False), help="Where artifacts of successful jobs are stored")
@click.option("--timeout", "step_timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-step timeout in seconds")
@click.option("--strict-runners/--no-strict-runners", default=None, help="Skip jobs whose runner this host can't serve")
@click.option("--action", "actions", multiple=True, metavar="NAME=COMMAND", help="Register an external action backed by a shell command")
@click.option("--event", default=None, help="Triggering event; nothing runs if the workflow isn't triggered by it")
@click.option("--job", "job_ids", multiple=True, help="Only run these job ids")
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text", show_default=True, help="Report format")
@click.pass_context
def run(ctx, workflow, workers, work_dir, in_place, artifact_dir, step_timeout, strict_runners, actions, event, job_ids, fmt):
    """Run a parallelci workflow."""
    debug = ctx.obj.get("debug", False)
    if fmt == "json":
        # keep stdout for the report
        set_console(Console(debug=debug, stream=sys.stderr))
    console = get_console()

    try:
        settings = load_settings()
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)

    commands = parse_action_options(actions)
    workflow_path = discover_workflow(workflow)
    wf, registry = load_or_exit(workflow_path, commands)

    if event and not wf.triggered_by(event):
        console.print_info(f"Workflow '{wf.name}' is not triggered by '{event}' (triggers: {', '.join(wf.triggers)})")
        if fmt == "json":
            click.echo(json.dumps({"workflow": wf.name, "status": "not-triggered", "event": event}))
        sys.exit(EXIT_OK)

    if job_ids:
        known = [j.id for j in wf.jobs]
        try:
            wf = Workflow(name=wf.name, jobs=[wf.job(j) for j in dict.fromkeys(job_ids)], triggers=wf.triggers, actions=wf.actions)
        except KeyError as e:
            console.print_error(
                "Unknown job",
                f"No job {e} in {workflow_path}",
                details=[f"Known jobs: {', '.join(known)}"],
            )
            sys.exit(EXIT_INVALID)

    scheduler = Scheduler(
        registry,
        ArtifactCollector(DirectorySink(artifact_dir or settings.artifact_dir)),
        runners=LocalRunnerProvider(
            work_dir or settings.work_dir,
            strict=settings.strict_runners if strict_runners is None else strict_runners,
            in_place=in_place,
        ),
        max_workers=workers or settings.max_workers,
        console=console,
        default_timeout=step_timeout if step_timeout is not None else settings.step_timeout,
    )
    cancel = CancelToken()

    console.print_run_started(workflow=f"{wf.name} ({workflow_path.name})", job_count=len(wf.jobs), workers=workers)

    try:
        with _InterruptHandler(cancel):
            report = scheduler.execute(wf, cancel)
    except KeyboardInterrupt:
        console.print_info("\nAborted by user")
        sys.exit(EXIT_INTERRUPTED)
    except SchedulerError as e:
        console.print_error("Internal scheduler error", str(e), suggestion="This is a bug in parallelci; please report it.")
        sys.exit(EXIT_INTERNAL)

    if fmt == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print_results(report)

    if report.succeeded:
        sys.exit(EXIT_OK)
    sys.exit(EXIT_INTERRUPTED if cancel.cancelled else EXIT_FAILED)


@cli.command(name="validate")
@click.option("--workflow", "-w", default=None, help="Workflow file to check")
@click.option("--action", "actions", multiple=True, metavar="NAME=COMMAND", help="Extra external action names to accept")
def validate_cmd(workflow, actions):
    """Parse and validate a workflow without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf, _registry = load_or_exit(workflow_path, parse_action_options(actions))
    steps = sum(len(j.steps) for j in wf.jobs)
    console.print_info(f"OK: {workflow_path} ({len(wf.jobs)} jobs, {steps} steps)")


@cli.command(name="list")
@click.option("--workflow", "-w", default=None, help="Workflow file to list")
@click.option("--action", "actions", multiple=True, metavar="NAME=COMMAND", help="Extra external action names to accept")
def list_cmd(workflow, actions):
    """List jobs, their runners and steps."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf, _registry = load_or_exit(workflow_path, parse_action_options(actions))

    console.print_header(f"{wf.name} (on: {', '.join(wf.triggers)})")
    for j in wf.jobs:
        console.print_info(f"{j.id} [{j.runner.value}]")
        for index, step in enumerate(j.steps):
            target = step.run if step.is_command else step.uses
            line = f"  {index}: {step.name}"
            if target and target != step.name:
                line += f" ({target})"
            if step.artifact is not None:
                line += f" -> artifact {step.artifact.name}"
            console.print_info(line)


if __name__ == "__main__":
    cli()
