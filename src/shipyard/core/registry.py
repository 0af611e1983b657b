from __future__ import annotations

import importlib
import logging
from pathlib import Path
from typing import Protocol

import typer

logger = logging.getLogger(__name__)


class CommandModule(Protocol):
    app: typer.Typer


def _import_module(module_name: str) -> object | None:
    try:
        return importlib.import_module(module_name)
    except ImportError as exc:
        logger.error("Failed to import command module %s: %s", module_name, exc)
        return None


def discover_commands(
    package_path: Path, package: str = "shipyard.commands"
) -> list[tuple[str, CommandModule]]:
    """
    Discover Typer command groups under the commands package.

    Every public module exposing a module-level `app` Typer becomes a command
    group named after the module (underscores become dashes).

    Returns:
        Sorted (group_name, module) pairs.
    """
    typer_modules: list[tuple[str, CommandModule]] = []

    for file in sorted(package_path.glob("*.py")):
        if file.name.startswith("_"):
            continue
        module_name = file.stem
        module = _import_module(f"{package}.{module_name}")
        if module is None:
            continue

        app = getattr(module, "app", None)
        if isinstance(app, typer.Typer):
            typer_modules.append((module_name.replace("_", "-"), module))  # type: ignore[arg-type]
        else:
            logger.debug("Module %s.%s has no Typer app; skipped", package, module_name)

    return typer_modules


__all__ = ["CommandModule", "discover_commands"]
