from __future__ import annotations

from pathlib import Path
from typing import Any

from shipyard.core.config import AppConfig, GitConfig, PathsConfig, load_config


class TestLoadConfig:
    def test_defaults_without_file(self, isolate_config: Path) -> None:
        config, meta = load_config()

        assert meta.path == isolate_config
        assert not meta.file_loaded
        assert meta.error is None
        assert config.git.main_branch == "main"
        assert config.git.branching == "flat"
        assert config.log_level == "WARNING"

    def test_toml_file(self, isolate_config: Path) -> None:
        isolate_config.write_text('[git]\nmain_branch = "trunk"\nmerge_to_main = "rebase"\n')

        config, meta = load_config()

        assert meta.file_loaded
        assert config.git.main_branch == "trunk"
        assert config.strategy_for_target("trunk") == "rebase"

    def test_json_file(self, tmp_path: Path) -> None:
        path = tmp_path / "shipyard.json"
        path.write_text('{"git": {"branching": "epic"}}')

        config, meta = load_config(config_path=path)

        assert meta.path == path
        assert config.git.branching == "epic"

    def test_env_overrides_file(self, isolate_config: Path, monkeypatch: Any) -> None:
        isolate_config.write_text('[git]\nmain_branch = "trunk"\n')
        monkeypatch.setenv("SHIPYARD_GIT__MAIN_BRANCH", "develop")

        config, meta = load_config()

        assert config.git.main_branch == "develop"
        assert meta.env_overrides == {"git.main_branch", "log_level"}

    def test_syntax_error_enters_safe_mode(self, isolate_config: Path) -> None:
        isolate_config.write_text("[git\nmain_branch = ")

        config, meta = load_config()

        assert meta.error is not None
        assert "Syntax error" in meta.error
        assert config.git.main_branch == "main"

    def test_invalid_value_enters_safe_mode(self, isolate_config: Path) -> None:
        isolate_config.write_text('[git]\nbranching = "sideways"\n')

        config, meta = load_config()

        assert meta.error is not None
        assert config.git.branching == "flat"


class TestAppConfig:
    def test_paths_resolve_under_repo_root(self, tmp_path: Path) -> None:
        config = AppConfig(paths=PathsConfig(repo_root=tmp_path, tasks_file=Path("/elsewhere/tasks.yaml")))

        assert config.worktrees_dir == tmp_path.resolve() / ".worktrees"
        assert config.agents_file == tmp_path.resolve() / ".shipyard" / "agents.json"
        assert config.tasks_file == Path("/elsewhere/tasks.yaml")
        assert config.state_paths == (config.worktrees_dir, config.agents_file)

    def test_strategy_per_target(self) -> None:
        config = AppConfig(git=GitConfig(merge_to_epic="rebase"))

        assert config.strategy_for_target("epic/E1") == "rebase"
        assert config.strategy_for_target("prd/P1") == "squash"
        assert config.strategy_for_target("main") == "squash"
