"""CLI command groups for yard.

Each public module exposes a Typer `app` registered as a sub-command:
    - deps: Dependency graph analysis and validation
    - worktree: Task worktrees, hierarchy reconciliation, merges and promotions
"""

from __future__ import annotations

from . import deps, worktree

__all__ = ["deps", "worktree"]
