from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from shipyard.core.config import AppConfig, PathsConfig
from tests.mocks.git_sandbox import GitSandbox, init_repo

HAS_GIT = shutil.which("git") is not None


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "git: tests that create real temporary git repositories",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests that use a real repository; skip them when git is not installed."""
    skip_git = pytest.mark.skip(reason="git executable not found")
    for item in items:
        if "sandbox" not in getattr(item, "fixturenames", ()):
            continue
        item.add_marker(pytest.mark.git)
        if not HAS_GIT:
            item.add_marker(skip_git)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def ensure_commands_registered() -> None:
    """Ensure CLI command groups are registered before tests run."""
    from shipyard.main import _register_commands

    _register_commands()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config to a temp path so tests don't touch user state."""
    for key in list(os.environ):
        if key.startswith("SHIPYARD_"):
            monkeypatch.delenv(key, raising=False)
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("SHIPYARD_CONFIG", str(cfg_path))
    monkeypatch.setenv("SHIPYARD_LOG_LEVEL", "WARNING")
    return cfg_path


# -----------------------------------------------------------------------------
# Real git repositories
# -----------------------------------------------------------------------------


@pytest.fixture
def sandbox(tmp_path: Path) -> GitSandbox:
    return init_repo(tmp_path / "repo")


@pytest.fixture
def app_config(sandbox: GitSandbox) -> AppConfig:
    """AppConfig rooted at the sandbox repository."""
    return AppConfig(paths=PathsConfig(repo_root=sandbox.root))
