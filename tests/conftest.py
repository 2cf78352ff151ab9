"""Fixtures shared by ``tests/unit`` and ``tests/integration``."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic_settings import SettingsConfigDict

from capbot.core import configure_logging
from capbot.core.models import LaunchRequest
from capbot.core.settings import Settings
from capbot.storage.file_store import FileStateStore


@pytest.fixture(autouse=True)
def _debug_logging() -> None:
    # Replaces whatever handler an earlier test installed.
    configure_logging(level="DEBUG", fmt="text", force=True)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Settings see defaults only: capbot variables unset, ``.env`` ignored."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.setattr(
        Settings, "model_config", SettingsConfigDict(**{**Settings.model_config, "env_file": None})
    )


@pytest.fixture()
def state_store(tmp_path: Path) -> FileStateStore:
    """Empty store under ``tmp_path``; the file does not exist yet."""
    return FileStateStore(tmp_path / "state" / "instance-state.json")


@pytest.fixture()
def flex_request() -> LaunchRequest:
    return LaunchRequest(
        request_id="a1-flex-sg",
        shape="VM.Standard.A1.Flex",
        targets=["AD-1", "AD-2", "AD-3"],
        ocpus=4,
        memory_gb=24,
    )


@pytest.fixture()
def micro_request() -> LaunchRequest:
    return LaunchRequest(
        request_id="e2-micro-sg",
        shape="VM.Standard.E2.1.Micro",
        targets=["AD-1", "AD-2", "AD-3"],
    )


