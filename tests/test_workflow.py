"""Unit tests for parsing, validating and loading workflow definitions."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from parallelci.actions import default_registry
from parallelci.errors import ValidationError
from parallelci.model import ArtifactSpec, Runner
from parallelci.workflow import load_workflow, parse, validate


def _doc(**overrides):
    doc = {
        "name": "main",
        "on": ["push", "pull_request"],
        "jobs": [
            {
                "id": "build-linux",
                "runs-on": "ubuntu-latest",
                "steps": [
                    {"uses": "actions/checkout@v2"},
                    {"name": "Build", "run": "cargo build --release"},
                    {"uses": "actions/upload-artifact@v1", "with": {"name": "app-linux", "path": "target/release/app"}},
                ],
            },
            {"id": "test", "runs-on": "linux-x64", "steps": [{"run": "cargo test"}]},
        ],
    }
    doc.update(overrides)
    return doc


def test_parse_builds_ordered_jobs_and_steps() -> None:
    wf = parse(_doc())

    assert wf.name == "main"
    assert wf.triggers == ("push", "pull_request")
    assert [j.id for j in wf.jobs] == ["build-linux", "test"]

    build = wf.job("build-linux")
    assert build.runner is Runner.LINUX_X64
    assert [s.name for s in build.steps] == ["actions/checkout@v2", "Build", "actions/upload-artifact@v1"]
    assert build.steps[1].run == "cargo build --release"
    assert build.steps[1].uses == "run"


def test_upload_artifact_step_declares_artifact() -> None:
    build = parse(_doc()).job("build-linux")
    assert build.artifacts == [ArtifactSpec(name="app-linux", path="target/release/app")]


def test_mapping_form_uses_keys_as_ids() -> None:
    wf = parse({
        "on": "push",
        "jobs": {
            "lint-windows": {
                "runs-on": "windows-latest",
                "steps": [{"uses": "setup-toolchain", "with": {"toolchain": "stable", "override": True}}],
            },
        },
    })
    lint = wf.job("lint-windows")
    assert lint.runner is Runner.WINDOWS_X64
    assert lint.steps[0].inputs == {"toolchain": "stable", "override": "true"}
    assert wf.triggers == ("push",)


def test_duplicate_job_ids_are_rejected() -> None:
    doc = _doc(jobs=[
        {"id": "test", "runs-on": "linux-x64", "steps": [{"run": "cargo test"}]},
        {"id": "test", "runs-on": "macos-x64", "steps": [{"run": "cargo test"}]},
    ])
    with pytest.raises(ValidationError) as exc:
        parse(doc)
    assert "duplicate job id 'test'" in exc.value.reason
    assert exc.value.location == "jobs[1].id"


@pytest.mark.parametrize(
    "job, location, fragment",
    [
        ({"id": "", "runs-on": "linux-x64", "steps": [{"run": "x"}]}, "jobs[0].id", "non-empty"),
        ({"id": "a/b", "runs-on": "linux-x64", "steps": [{"run": "x"}]}, "jobs[0].id", "may only contain"),
        ({"id": "a", "runs-on": "linux-x64", "steps": []}, "jobs.a.steps", "at least one step"),
        ({"id": "a", "runs-on": "plan9-x64", "steps": [{"run": "x"}]}, "jobs.a.runs-on", "unknown runner"),
        ({"id": "a", "runs-on": "linux-x64", "steps": [{"run": "  "}]}, "jobs.a.steps[0].run", "non-empty"),
        ({"id": "a", "runs-on": "linux-x64", "steps": [{"name": "nothing"}]}, "jobs.a.steps[0]", "either 'run' or 'uses'"),
        ({"id": "a", "runs-on": "linux-x64", "steps": [{"run": "x", "uses": "y"}]}, "jobs.a.steps[0]", "both"),
        ({"id": "a", "runs-on": "linux-x64", "steps": [{"run": "x", "timeout": 0}]}, "jobs.a.steps[0].timeout", "positive"),
    ],
)
def test_invalid_jobs(job, location, fragment) -> None:
    with pytest.raises(ValidationError) as exc:
        parse(_doc(jobs=[job]))
    assert exc.value.location == location
    assert fragment in exc.value.reason


def test_schema_errors_carry_location() -> None:
    with pytest.raises(ValidationError) as exc:
        parse(_doc(jobs=[{"id": "test", "steps": [{"run": "cargo test"}]}]))
    assert exc.value.location == "jobs.test.runs-on"


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError) as exc:
        parse(_doc(jobs=[{"id": "t", "runs-on": "linux-x64", "steps": [{"run": "x", "shel": "bash"}]}]))
    assert exc.value.location == "jobs.t.steps[0].shel"


def test_empty_workflow_is_rejected() -> None:
    with pytest.raises(ValidationError, match="no jobs"):
        parse({"name": "empty", "jobs": []})


def test_known_actions_are_enforced() -> None:
    with pytest.raises(ValidationError) as exc:
        parse(_doc(), known_actions=default_registry())
    assert exc.value.location == "jobs.build-linux.steps[0].uses"
    assert "actions/checkout@v2" in exc.value.reason

    # checkout resolves via its short name, upload-artifact is built in
    parse(_doc(), known_actions=default_registry({"checkout": "true"}))


def test_workflow_local_actions_count_as_known() -> None:
    doc = _doc(actions={"setup-toolchain": "rustup default $INPUT_TOOLCHAIN"})
    doc["jobs"][1]["steps"].insert(0, {"uses": "setup-toolchain", "with": {"toolchain": "stable"}})
    wf = parse(doc, known_actions={"checkout", "upload-artifact", "run"})
    assert wf.actions == {"setup-toolchain": "rustup default $INPUT_TOOLCHAIN"}


def test_unknown_action_is_reported() -> None:
    doc = _doc()
    doc["jobs"][1]["steps"].append({"uses": "deploy"})
    with pytest.raises(ValidationError) as exc:
        parse(doc, known_actions=default_registry({"checkout": "true"}))
    assert exc.value.location == "jobs.test.steps[1].uses"


def test_timeout_minutes_become_seconds() -> None:
    wf = parse(_doc(jobs=[{"id": "t", "runs-on": "linux-x64", "steps": [{"run": "x", "timeout-minutes": 2}]}]))
    assert wf.job("t").steps[0].timeout == 120


def test_validate_rejects_duplicate_artifact_names() -> None:
    wf = parse(_doc())
    step = wf.job("build-linux").steps[2]
    wf.job("build-linux").steps.append(step)
    with pytest.raises(ValidationError, match="duplicate artifact"):
        validate(wf)


# ----------------------------------------------------------------------
# Loading from files
# ----------------------------------------------------------------------

def test_load_yaml_handles_bare_on_key(tmp_path: Path) -> None:
    path = tmp_path / "main.yml"
    path.write_text(
        "on:\n"
        "  - push\n"
        "jobs:\n"
        "  test:\n"
        "    runs-on: ubuntu-latest\n"
        "    steps:\n"
        "      - run: cargo test\n",
        encoding="utf-8",
    )
    wf = load_workflow(path)
    assert wf.name == "main"
    assert wf.triggers == ("push",)
    assert wf.job("test").runner is Runner.LINUX_X64


def test_load_yaml_rejects_duplicate_job_keys(tmp_path: Path) -> None:
    path = tmp_path / "dupes.yml"
    path.write_text(
        "jobs:\n"
        "  test:\n"
        "    runs-on: linux-x64\n"
        "    steps: [{run: cargo test}]\n"
        "  test:\n"
        "    runs-on: macos-x64\n"
        "    steps: [{run: cargo test}]\n",
        encoding="utf-8",
    )
    with pytest.raises(ValidationError) as exc:
        load_workflow(path)
    assert "duplicate key 'test'" in exc.value.reason
    assert exc.value.location.startswith("dupes.yml:5")


def test_load_json_rejects_duplicate_keys(tmp_path: Path) -> None:
    path = tmp_path / "dupes.json"
    path.write_text('{"jobs": {"test": {"runs-on": "linux-x64", "steps": [{"run": "x"}]}, '
                    '"test": {"runs-on": "linux-x64", "steps": [{"run": "y"}]}}}', encoding="utf-8")
    with pytest.raises(ValidationError, match="duplicate key 'test'"):
        load_workflow(path)


def test_load_json(tmp_path: Path) -> None:
    path = tmp_path / "ci.json"
    path.write_text(json.dumps(_doc()), encoding="utf-8")
    assert [j.id for j in load_workflow(path).jobs] == ["build-linux", "test"]


def test_load_python_workflow(tmp_path: Path) -> None:
    path = tmp_path / "ci_workflow.py"
    path.write_text(
        "from parallelci import wf, job, sh, upload, matrix\n"
        "\n"
        "def workflow():\n"
        "    return wf(\n"
        "        matrix('os', ['linux-x64', 'macos-x64']).jobs(\n"
        "            lambda os: job(f'build-{os}', sh('Build', 'make'), upload('Up', f'app-{os}', 'app'), runs_on=os)\n"
        "        ),\n"
        "        job('test', sh('Test', 'make test')),\n"
        "        name='ci',\n"
        "    )\n",
        encoding="utf-8",
    )
    wf = load_workflow(path)
    assert wf.name == "ci"
    assert [j.id for j in wf.jobs] == ["build-linux-x64", "build-macos-x64", "test"]
    assert wf.job("build-macos-x64").runner is Runner.MACOS_X64
    assert wf.job("build-linux-x64").artifacts[0].name == "app-linux-x64"


def test_load_python_job_list_is_validated(tmp_path: Path) -> None:
    path = tmp_path / "dupe_workflow.py"
    path.write_text(
        "from parallelci import job, sh\n"
        "JOBS = [job('test', sh('a', 'true')), job('test', sh('b', 'true'))]\n",
        encoding="utf-8",
    )
    with pytest.raises(ValidationError, match="duplicate job id"):
        load_workflow(path)


def test_load_rejects_unknown_suffix(tmp_path: Path) -> None:
    path = tmp_path / "ci.toml"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ValidationError, match="unsupported"):
        load_workflow(path)


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.yml")


@pytest.mark.parametrize("name", ["../../x", "dist/app", "..", ""])
def test_artifact_names_must_be_plain(name) -> None:
    doc = _doc(jobs=[{
        "id": "build",
        "runs-on": "linux-x64",
        "steps": [{"uses": "upload-artifact", "with": {"name": name, "path": "out/app"}}],
    }])
    with pytest.raises(ValidationError) as exc:
        parse(doc)
    assert exc.value.location == "jobs.build.steps[0].artifact"


def test_dot_job_ids_are_rejected() -> None:
    with pytest.raises(ValidationError, match="may only contain"):
        parse(_doc(jobs=[{"id": "..", "runs-on": "linux-x64", "steps": [{"run": "true"}]}]))
