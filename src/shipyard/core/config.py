"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (SHIPYARD_* prefix, nested with __)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from shipyard.core.result import ConfigurationError

CONFIG_ENV_VAR = "SHIPYARD_CONFIG"
DEFAULT_CONFIG_NAME = ".shipyard.toml"

MergeStrategy = Literal["merge", "squash", "rebase"]
SyncStrategy = Literal["merge", "rebase"]
BranchingMode = Literal["flat", "epic", "prd"]


class ConfigError(ConfigurationError):
    """Raised when the config file cannot be read or parsed."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class GitConfig(BaseModel):
    """Branch names and integration strategies."""

    main_branch: str = Field(default="main", description="Integration trunk every hierarchy ends in.")
    remote: str = Field(default="origin", description="Remote used for push, PRs and branch cleanup.")
    branching: BranchingMode = Field(
        default="flat", description="Default tiers between task branches and main."
    )
    merge_to_epic: MergeStrategy = Field(
        default="merge", description="Strategy for task -> epic merges."
    )
    merge_to_prd: MergeStrategy = Field(
        default="squash", description="Strategy for task/epic -> prd merges."
    )
    merge_to_main: MergeStrategy = Field(
        default="squash", description="Strategy for anything -> main merges."
    )
    sync_strategy: SyncStrategy = Field(
        default="merge", description="How diverged branches take in their parent."
    )
    delete_remote_on_cleanup: bool = Field(
        default=True, description="Delete the remote task branch when a worktree is cleaned up."
    )


class PathsConfig(BaseModel):
    """Filesystem locations, relative paths resolve against repo_root."""

    repo_root: Path = Field(default=Path("."), description="Main checkout of the shared repository.")
    worktrees_dir: Path = Field(
        default=Path(".worktrees"), description="Directory holding one checkout per task."
    )
    tasks_file: Path = Field(
        default=Path("tasks.yaml"), description="Task snapshot exported by the artifact store."
    )
    agents_file: Path = Field(
        default=Path(".shipyard/agents.json"), description="Agent/run registry JSON file."
    )


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="SHIPYARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    git: GitConfig = Field(default_factory=GitConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    log_level: str = Field(default="INFO", description="Log level for yard output.")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)

    @property
    def repo_root(self) -> Path:
        return self.paths.repo_root.expanduser().resolve()

    def _under_root(self, path: Path) -> Path:
        expanded = path.expanduser()
        return expanded if expanded.is_absolute() else self.repo_root / expanded

    @property
    def worktrees_dir(self) -> Path:
        return self._under_root(self.paths.worktrees_dir)

    @property
    def tasks_file(self) -> Path:
        return self._under_root(self.paths.tasks_file)

    @property
    def agents_file(self) -> Path:
        return self._under_root(self.paths.agents_file)

    @property
    def state_paths(self) -> tuple[Path, ...]:
        """Paths shipyard writes inside the repository; never user changes."""
        return (self.worktrees_dir, self.agents_file)

    def strategy_for_target(self, target: str) -> MergeStrategy:
        """Default merge strategy for a merge whose target branch is `target`."""
        if target.startswith("epic/"):
            return self.git.merge_to_epic
        if target.startswith("prd/"):
            return self.git.merge_to_prd
        return self.git.merge_to_main


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.cwd() / DEFAULT_CONFIG_NAME)
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    parser = json.loads if suffix == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like SHIPYARD_GIT__MAIN_BRANCH.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    nested_models: dict[str, type[BaseModel]] = {
        "git": GitConfig,
        "paths": PathsConfig,
    }

    for group_name, model_cls in nested_models.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    if f"{prefix}LOG_LEVEL" in env_vars:
        overrides.add("log_level")

    return overrides


def load_config(config_path: Path | None = None) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    try:
        config = AppConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = AppConfig()

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result
