from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Keep test runs from writing log files under the home directory
os.environ.setdefault("MULTIBRANCH_LOG_DISABLE_FILE", "1")


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture
def clean_config():
    """Fresh, uncached configuration for the duration of a test."""
    from multibranch.config_loader import clear_config_cache

    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Point the home directory and cwd at empty temp dirs so no real config is found."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    for key in list(os.environ):
        if key.startswith("MULTIBRANCH_") and key != "MULTIBRANCH_LOG_DISABLE_FILE":
            monkeypatch.delenv(key, raising=False)
    return {"home": home, "work": work}
