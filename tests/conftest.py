"""Shared fixtures for the plugin updater tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from fakes import FakeRunner

from plugin_updater.config import get_settings


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep ambient PLUGIN_UPDATER_* variables and cached settings out of tests."""
    for name in list(os.environ):
        if name.upper().startswith("PLUGIN_UPDATER_"):
            monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_runner(tmp_path: Path) -> FakeRunner:
    return FakeRunner(cwd=tmp_path)
