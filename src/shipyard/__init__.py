"""shipyard - orchestration engine for parallel coding agents on one git repository.

This package provides the core behind the `yard` command-line tool:
dependency-graph analysis, per-task git worktrees, branch-hierarchy
reconciliation, conflict detection and the merge/promote protocol.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.4.0"
