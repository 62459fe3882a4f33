# ci_workflow.py
# Release builds on every platform, plus tests and lints. Checkout and
# toolchain setup are external actions backed by shell commands.
from __future__ import annotations

from parallelci import job, matrix, sh, upload, uses, wf

TARGETS = {
    "windows-64bit": ("windows-x64", "x86_64-pc-windows-msvc", "ludusavi.exe", "ludusavi-win64"),
    "windows-32bit": ("windows-x86", "i686-pc-windows-msvc", "ludusavi.exe", "ludusavi-win32"),
    "linux": ("linux-x64", "x86_64-unknown-linux-gnu", "ludusavi", "ludusavi-linux"),
    "mac": ("macos-x64", "x86_64-apple-darwin", "ludusavi", "ludusavi-mac"),
}

ACTIONS = {
    "checkout": "git clone --depth 1 \"${REPOSITORY:-.}\" . 2>/dev/null || git pull --ff-only",
    "setup-toolchain": (
        "rustup toolchain install \"$INPUT_TOOLCHAIN\" --profile \"${INPUT_PROFILE:-default}\" "
        "${INPUT_COMPONENTS:+--component $INPUT_COMPONENTS} "
        "${INPUT_TARGET:+--target $INPUT_TARGET}"
    ),
}


def build_job(name: str):
    runner, target, binary, artifact = TARGETS[name]
    return job(
        f"build-{name}",
        uses("Checkout", "checkout"),
        uses("Toolchain", "setup-toolchain", toolchain="stable", target=target),
        sh("Build", f"cargo build --release --target {target}"),
        upload("Upload", artifact, f"target/{target}/release/{binary}"),
        runs_on=runner,
    )


def lint_job(runner: str):
    return job(
        f"lint-{runner.split('-')[0]}",
        uses("Checkout", "checkout"),
        uses("Toolchain", "setup-toolchain", toolchain="stable", profile="minimal", components="rustfmt,clippy"),
        sh("Format", "cargo fmt --all -- --check"),
        sh("Clippy", "cargo clippy -- -D warnings"),
        runs_on=runner,
    )


def workflow():
    return wf(
        matrix("target", TARGETS).jobs(build_job),
        job(
            "test",
            uses("Checkout", "checkout"),
            uses("Toolchain", "setup-toolchain", toolchain="stable", profile="minimal"),
            sh("Test", "cargo test"),
        ),
        matrix("runner", ["windows-x64", "linux-x64"]).jobs(lint_job),
        name="main",
        on=["push", "pull_request"],
        actions=ACTIONS,
    )
