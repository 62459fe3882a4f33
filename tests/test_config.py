"""Unit tests for environment-driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from parallelci.config import Settings, load_settings


def test_defaults_when_environment_is_empty() -> None:
    settings = load_settings({})
    assert settings == Settings()
    assert settings.step_timeout is None
    assert settings.max_workers is None


def test_reads_environment() -> None:
    settings = load_settings({
        "PARALLELCI_WORK_DIR": "/tmp/w",
        "PARALLELCI_ARTIFACT_DIR": "/tmp/a",
        "PARALLELCI_WORKERS": "4",
        "PARALLELCI_STEP_TIMEOUT": "90",
        "PARALLELCI_STRICT_RUNNERS": "yes",
    })
    assert settings.work_dir == Path("/tmp/w")
    assert settings.artifact_dir == Path("/tmp/a")
    assert settings.max_workers == 4
    assert settings.step_timeout == 90.0
    assert settings.strict_runners is True


@pytest.mark.parametrize("name, value", [("PARALLELCI_WORKERS", "0"), ("PARALLELCI_STEP_TIMEOUT", "soon")])
def test_rejects_bad_numbers(name: str, value: str) -> None:
    with pytest.raises(ValueError, match=name):
        load_settings({name: value})
