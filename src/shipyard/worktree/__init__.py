"""Worktree isolation, branch hierarchy and integration."""

from shipyard.worktree.conflicts import ConflictEdge, ConflictMatrix, build_conflict_matrix
from shipyard.worktree.hierarchy import BranchContext, Branching, parent_branch
from shipyard.worktree.lifecycle import Worktree, WorktreeManager
from shipyard.worktree.merge import MergeOrchestrator, MergeRecord, cascade
from shipyard.worktree.preflight import postflight, preflight
from shipyard.worktree.reconcile import Action, BranchState, Diagnosis, Reconciler

__all__ = [
    "Action",
    "BranchContext",
    "BranchState",
    "Branching",
    "ConflictEdge",
    "ConflictMatrix",
    "Diagnosis",
    "MergeOrchestrator",
    "MergeRecord",
    "Reconciler",
    "Worktree",
    "WorktreeManager",
    "build_conflict_matrix",
    "cascade",
    "parent_branch",
    "postflight",
    "preflight",
]
