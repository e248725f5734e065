"""Pytest fixtures: mesh config files, fake watcher, app settings isolation."""

from pathlib import Path

import pytest

from meshconfig.config.loader import reset_app_settings_cache
from meshconfig.watch.fake import FakeWatcher
from tests._helpers import VALID_MESH_YAML


@pytest.fixture
def mesh_file(tmp_path) -> Path:
    """Mesh config file with valid content."""
    p = tmp_path / "mesh"
    p.write_text(VALID_MESH_YAML, encoding="utf-8")
    return p


@pytest.fixture
def fake_watcher():
    """In-memory watcher; closed at teardown."""
    w = FakeWatcher()
    yield w
    w.close_error = None
    w.close()


@pytest.fixture(autouse=True)
def isolated_app_settings(monkeypatch, tmp_path):
    """Each test starts with no cached app settings and no MESH_* env overrides."""
    for key in ("MESH_CONFIG_FILE", "MESH_WATCH_DEBOUNCE", "MESH_HOST", "MESH_PORT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONFIG_DIR", str(tmp_path / "app-config"))
    reset_app_settings_cache()
    yield
    reset_app_settings_cache()
