"""Helpers shared by the command modules."""

from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from typing import Any

import typer
from pydantic import BaseModel

from shipyard.core.artifacts import AgentRegistry, TaskSnapshot, load_snapshot
from shipyard.core.config import AppConfig
from shipyard.core.result import unwrap_or_raise
from shipyard.git import AsyncRepo


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    return value


def emit_json(payload: Any) -> None:
    typer.echo(json.dumps(to_jsonable(payload), indent=2, default=str))


def snapshot_for(config: AppConfig) -> TaskSnapshot:
    return load_snapshot(config.tasks_file)


def optional_snapshot(config: AppConfig) -> TaskSnapshot | None:
    """The task snapshot when one exists; worktree commands work without it."""
    if not config.tasks_file.exists():
        return None
    return load_snapshot(config.tasks_file)


def registry_for(config: AppConfig) -> AgentRegistry:
    return AgentRegistry.load(config.agents_file)


async def open_repo(config: AppConfig) -> AsyncRepo:
    return unwrap_or_raise(await AsyncRepo.open(config.repo_root))
