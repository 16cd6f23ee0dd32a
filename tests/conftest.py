"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from toolchat.events import EventBus

from tests.helpers import ScriptedClient


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def scripted_client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests away from the user's ~/.toolchat and TOOLCHAT_* variables."""

    for name in list(os.environ):
        if name.startswith("TOOLCHAT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TOOLCHAT_LOG_DIR", str(tmp_path / "logs"))
