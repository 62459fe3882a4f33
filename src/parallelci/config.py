from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .artifacts import DEFAULT_ARTIFACT_DIR
from .runner import DEFAULT_WORK_DIR

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Process-wide defaults. CLI options override these."""
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    artifact_dir: Path = Path(DEFAULT_ARTIFACT_DIR)
    max_workers: Optional[int] = None
    # None means steps may run as long as they like
    step_timeout: Optional[float] = None
    strict_runners: bool = False


def _positive(name: str, raw: str, cast):
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    workers = env.get("PARALLELCI_WORKERS")
    timeout = env.get("PARALLELCI_STEP_TIMEOUT")

    return Settings(
        work_dir=Path(env.get("PARALLELCI_WORK_DIR", DEFAULT_WORK_DIR)),
        artifact_dir=Path(env.get("PARALLELCI_ARTIFACT_DIR", DEFAULT_ARTIFACT_DIR)),
        max_workers=_positive("PARALLELCI_WORKERS", workers, int) if workers else None,
        step_timeout=_positive("PARALLELCI_STEP_TIMEOUT", timeout, float) if timeout else None,
        strict_runners=env.get("PARALLELCI_STRICT_RUNNERS", "").strip().lower() in _TRUE,
    )
