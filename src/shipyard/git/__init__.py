"""Git operations and repository management.

This package provides async git operations:
    - AsyncRepo: Non-blocking git commands behind the GitBackend protocol
    - Branch status, ancestry and divergence
    - Worktree management
    - Trial merges via merge-tree
"""

from __future__ import annotations

from .client import (
    AsyncRepo,
    GitBackend,
    MergeTreeResult,
    WorktreeInfo,
)
from .ops import (
    Divergence,
    divergence,
    is_merged,
    modified_files,
    trial_merge,
    uncommitted_paths,
)

__all__ = [
    "AsyncRepo",
    "Divergence",
    "GitBackend",
    "MergeTreeResult",
    "WorktreeInfo",
    "divergence",
    "is_merged",
    "modified_files",
    "trial_merge",
    "uncommitted_paths",
]
