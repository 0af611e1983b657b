"""Branch hierarchy reconciliation.

Two phases, never collapsed:

1. `diagnose()` classifies every (branch, parent) edge of a hierarchy and
   returns recommended actions. It does not touch any ref.
2. `apply()` executes the sync and prune actions it is handed. Escalations
   are returned untouched.

States per edge:

    MISSING   branch does not exist yet
    ORPHAN    parent branch missing, or the task/epic/PRD is gone
    SYNCED    neither side has unique commits
    AHEAD     branch has unique commits, parent has none
    BEHIND    parent has unique commits, branch has none
    DIVERGED  both have unique commits, trial merge is clean
    CONFLICT  both have unique commits, trial merge conflicts
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.config import SyncStrategy
from shipyard.core.result import Err, Ok, OperationError, unwrap_or_raise
from shipyard.git import GitBackend, divergence, is_merged, trial_merge, uncommitted_paths
from shipyard.worktree.hierarchy import (
    BranchContext,
    Branching,
    hierarchy_edges,
    parse_branch,
)
from shipyard.worktree.lifecycle import branch_checkout

logger = logging.getLogger(__name__)

ActionKind = Literal["sync", "prune", "escalate", "promote"]
OutcomeStatus = Literal["applied", "skipped", "kept", "escalated", "failed", "planned"]


class BranchState(str, Enum):
    SYNCED = "synced"
    AHEAD = "ahead"
    BEHIND = "behind"
    DIVERGED = "diverged"
    CONFLICT = "conflict"
    ORPHAN = "orphan"
    MISSING = "missing"


class BranchHierarchyNode(BaseModel):
    """Relation of one branch to its parent at the time it was classified."""

    model_config = ConfigDict(frozen=True)

    branch: str
    parent: str
    state: BranchState
    ahead: int = 0
    behind: int = 0
    conflict_files: list[str] = Field(default_factory=list)


class Action(BaseModel):
    """A recommended step. Recommending never executes anything.

    Attributes:
        kind: sync and prune can be applied; escalate and promote are for a human
        branch: Branch the action concerns
        parent: Branch it syncs from (sync) or is promoted into (promote)
        strategy: ff, merge or rebase for sync actions
        message: Human explanation
        command: Exact command that performs or resolves the action
    """

    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    branch: str
    message: str
    parent: str | None = None
    strategy: str | None = None
    command: str | None = None


class ApplyOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Action
    status: OutcomeStatus
    message: str


class Diagnosis(BaseModel):
    nodes: list[BranchHierarchyNode] = Field(default_factory=list)
    orphans: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.actions


class GateIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch: str
    parent: str
    state: BranchState
    message: str
    command: str | None = None


class GateResult(BaseModel):
    nodes: list[BranchHierarchyNode] = Field(default_factory=list)
    blockers: list[GateIssue] = Field(default_factory=list)
    warnings: list[GateIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.blockers


def sync_command(context: BranchContext) -> str:
    parts = ["yard worktree sync"]
    if context.prd_id:
        parts.append(f"--prd {context.prd_id}")
    if context.epic_id and context.branching is Branching.EPIC:
        parts.append(f"--epic {context.epic_id}")
    return " ".join(parts)


def conflict_command(branch: str, parent: str) -> str:
    return f"git checkout {branch} && git merge {parent}"


class Reconciler:
    """Diagnoses a branch hierarchy and applies approved sync/prune actions.

    Mutations run one git process at a time. Callers must not reconcile the
    same branch concurrently.
    """

    def __init__(
        self,
        repo: GitBackend,
        *,
        main_branch: str = "main",
        remote: str = "origin",
        sync_strategy: SyncStrategy = "merge",
        scratch_dir: Path | None = None,
        ignore_paths: Iterable[Path] = (),
    ) -> None:
        self._repo = repo
        self._ignore_paths = tuple(ignore_paths)
        self._main_branch = main_branch
        self._remote = remote
        self._sync_strategy = sync_strategy
        self._scratch_dir = scratch_dir or repo.path / ".worktrees" / ".sync"

    # -------------------------------------------------------------------------
    # Diagnosis
    # -------------------------------------------------------------------------

    async def classify(self, branch: str, parent: str) -> BranchHierarchyNode:
        """Classify one edge from live refs."""
        if not unwrap_or_raise(await self._repo.branch_exists(branch)):
            return BranchHierarchyNode(branch=branch, parent=parent, state=BranchState.MISSING)
        if not unwrap_or_raise(await self._repo.branch_exists(parent)):
            return BranchHierarchyNode(branch=branch, parent=parent, state=BranchState.ORPHAN)

        counts = unwrap_or_raise(await divergence(self._repo, branch, parent))
        if counts.behind == 0:
            state = BranchState.SYNCED if counts.ahead == 0 else BranchState.AHEAD
            return BranchHierarchyNode(
                branch=branch, parent=parent, state=state, ahead=counts.ahead, behind=0
            )
        if counts.ahead == 0:
            return BranchHierarchyNode(
                branch=branch, parent=parent, state=BranchState.BEHIND, ahead=0, behind=counts.behind
            )

        conflicts = unwrap_or_raise(await trial_merge(self._repo, branch, parent))
        return BranchHierarchyNode(
            branch=branch,
            parent=parent,
            state=BranchState.CONFLICT if conflicts else BranchState.DIVERGED,
            ahead=counts.ahead,
            behind=counts.behind,
            conflict_files=conflicts,
        )

    def recommend(self, node: BranchHierarchyNode) -> Action | None:
        """The next step for one classified edge, or None when nothing is needed."""
        match node.state:
            case BranchState.BEHIND:
                return Action(
                    kind="sync",
                    branch=node.branch,
                    parent=node.parent,
                    strategy="ff",
                    message=f"{node.branch} is {node.behind} commit(s) behind {node.parent}",
                    command=f"git checkout {node.branch} && git merge --ff-only {node.parent}",
                )
            case BranchState.DIVERGED:
                verb = "rebase" if self._sync_strategy == "rebase" else "merge"
                return Action(
                    kind="sync",
                    branch=node.branch,
                    parent=node.parent,
                    strategy=self._sync_strategy,
                    message=(
                        f"{node.branch} diverged from {node.parent} "
                        f"({node.ahead} ahead, {node.behind} behind), no conflicts"
                    ),
                    command=f"git checkout {node.branch} && git {verb} {node.parent}",
                )
            case BranchState.CONFLICT:
                return Action(
                    kind="escalate",
                    branch=node.branch,
                    parent=node.parent,
                    message=(
                        f"{node.branch} conflicts with {node.parent} in "
                        f"{', '.join(node.conflict_files)}; needs manual resolution"
                    ),
                    command=conflict_command(node.branch, node.parent),
                )
            case BranchState.ORPHAN:
                return Action(
                    kind="escalate",
                    branch=node.branch,
                    parent=node.parent,
                    message=f"Parent branch {node.parent} of {node.branch} does not exist",
                    command=f"git branch {node.parent} {self._main_branch}",
                )
            case _:
                return None

    async def _orphan_branches(self, known_ids: set[str]) -> list[str]:
        branches = unwrap_or_raise(await self._repo.list_branches("task/*", "epic/*", "prd/*"))
        orphans: list[str] = []
        for branch in branches:
            parsed = parse_branch(branch)
            if parsed is not None and parsed[1] not in known_ids:
                orphans.append(branch)
        return orphans

    async def remote_lag(self) -> int:
        """Commits origin/main has that local main lacks (0 without a remote)."""
        if not unwrap_or_raise(await self._repo.has_remote(self._remote)):
            return 0
        remote_ref = f"{self._remote}/{self._main_branch}"
        if not unwrap_or_raise(await self._repo.ref_exists(remote_ref)):
            return 0
        if not unwrap_or_raise(await self._repo.branch_exists(self._main_branch)):
            return 0
        return unwrap_or_raise(await divergence(self._repo, self._main_branch, remote_ref)).behind

    async def diagnose(
        self,
        context: BranchContext,
        *,
        task_ids: Iterable[str] | None = None,
        known_ids: set[str] | None = None,
    ) -> Diagnosis:
        """Classify the hierarchy top-down and recommend actions.

        Each edge is classified on its own: a child may be BEHIND while its
        parent is SYNCED.

        Args:
            context: Which PRD/epic hierarchy to walk
            task_ids: Task branches to include under the hierarchy
            known_ids: Ids that still exist; when given, task/epic/prd branches
                for any other id are reported as orphans with prune actions
        """
        diagnosis = Diagnosis()
        edges = hierarchy_edges(context, self._main_branch, list(task_ids or []))

        for branch, parent in edges:
            node = await self.classify(branch, parent)
            diagnosis.nodes.append(node)
            if node.state is BranchState.MISSING:
                diagnosis.issues.append(f"{branch} does not exist yet")
            action = self.recommend(node)
            if action is not None:
                diagnosis.actions.append(action)

        if known_ids is not None:
            for branch in await self._orphan_branches(known_ids):
                diagnosis.orphans.append(branch)
                diagnosis.actions.append(
                    Action(
                        kind="prune",
                        branch=branch,
                        message=f"{branch} belongs to an id that no longer exists",
                        command=f"git branch -d {branch}",
                    )
                )

        lag = await self.remote_lag()
        if lag:
            remote_ref = f"{self._remote}/{self._main_branch}"
            diagnosis.issues.append(f"{self._main_branch} is {lag} commit(s) behind {remote_ref}")
            diagnosis.actions.append(
                Action(
                    kind="escalate",
                    branch=self._main_branch,
                    parent=remote_ref,
                    message=f"{self._main_branch} is behind {remote_ref}",
                    command=f"git checkout {self._main_branch} && git merge --ff-only {remote_ref}",
                )
            )

        return diagnosis

    async def branch_gate(
        self,
        context: BranchContext,
        *,
        task_id: str | None = None,
        for_merge: bool = False,
    ) -> GateResult:
        """Check whether the hierarchy is fit to spawn (or merge-resolve) a task.

        BEHIND, DIVERGED and CONFLICT edges block a spawn. In for-merge mode
        they are warnings, since a conflict-resolution worker needs exactly
        those branches. Missing integration branches always block.
        """
        result = GateResult()
        edges = hierarchy_edges(context, self._main_branch, [task_id] if task_id else None)

        for branch, parent in edges:
            node = await self.classify(branch, parent)
            result.nodes.append(node)
            is_task_edge = task_id is not None and parse_branch(branch) == ("task", task_id)

            match node.state:
                case BranchState.MISSING if is_task_edge:
                    continue
                case BranchState.MISSING:
                    result.blockers.append(
                        GateIssue(
                            branch=branch,
                            parent=parent,
                            state=node.state,
                            message=f"Integration branch {branch} does not exist",
                            command=f"git branch {branch} {parent}",
                        )
                    )
                case BranchState.ORPHAN:
                    result.blockers.append(
                        GateIssue(
                            branch=branch,
                            parent=parent,
                            state=node.state,
                            message=f"Parent branch {parent} of {branch} does not exist",
                            command=f"git branch {parent} {self._main_branch}",
                        )
                    )
                case BranchState.BEHIND | BranchState.DIVERGED:
                    issue = GateIssue(
                        branch=branch,
                        parent=parent,
                        state=node.state,
                        message=f"{branch} is {node.state.value} relative to {parent}",
                        command=sync_command(context),
                    )
                    (result.warnings if for_merge else result.blockers).append(issue)
                case BranchState.CONFLICT:
                    issue = GateIssue(
                        branch=branch,
                        parent=parent,
                        state=node.state,
                        message=(
                            f"{branch} conflicts with {parent} in {', '.join(node.conflict_files)}"
                        ),
                        command=conflict_command(branch, parent),
                    )
                    (result.warnings if for_merge else result.blockers).append(issue)
                case _:
                    pass

        return result

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------

    async def apply(
        self,
        actions: Iterable[Action],
        *,
        force: bool = False,
        dry_run: bool = False,
    ) -> list[ApplyOutcome]:
        """Execute approved sync and prune actions, one at a time.

        A failing action is aborted and reported; it does not stop the rest.
        """
        outcomes: list[ApplyOutcome] = []
        for action in actions:
            if action.kind in ("escalate", "promote"):
                outcomes.append(ApplyOutcome(action=action, status="escalated", message=action.message))
                continue
            if dry_run:
                outcomes.append(
                    ApplyOutcome(action=action, status="planned", message=action.command or action.message)
                )
                continue
            try:
                if action.kind == "sync":
                    outcomes.append(await self._apply_sync(action))
                else:
                    outcomes.append(await self._apply_prune(action, force=force))
            except OperationError as exc:
                logger.warning("%s %s failed: %s", action.kind, action.branch, exc.message)
                outcomes.append(ApplyOutcome(action=action, status="failed", message=exc.message))
        return outcomes

    async def _apply_sync(self, action: Action) -> ApplyOutcome:
        if action.parent is None:
            return ApplyOutcome(action=action, status="failed", message="sync action without a parent")

        # Refs may have moved since diagnosis.
        node = await self.classify(action.branch, action.parent)
        match node.state:
            case BranchState.SYNCED | BranchState.AHEAD:
                return ApplyOutcome(action=action, status="skipped", message=f"{action.branch} already in sync")
            case BranchState.CONFLICT:
                return ApplyOutcome(
                    action=action,
                    status="escalated",
                    message=(
                        f"{action.branch} now conflicts with {action.parent} in "
                        f"{', '.join(node.conflict_files)}; needs manual resolution "
                        f"({conflict_command(action.branch, action.parent)})"
                    ),
                )
            case BranchState.MISSING | BranchState.ORPHAN:
                return ApplyOutcome(
                    action=action,
                    status="failed",
                    message=f"{action.branch} or {action.parent} no longer exists",
                )
            case _:
                pass

        async with branch_checkout(self._repo, action.branch, self._scratch_dir) as checkout:
            dirty = unwrap_or_raise(await uncommitted_paths(checkout, self._ignore_paths))
            if dirty:
                return ApplyOutcome(
                    action=action,
                    status="failed",
                    message=f"{action.branch} checkout at {checkout.path} has uncommitted changes",
                )

            if node.state is BranchState.BEHIND:
                result = await checkout.merge(action.parent, ff_only=True)
                strategy = "ff"
            elif self._sync_strategy == "rebase":
                result = (await checkout.rebase(action.parent)).map(lambda _: "")
                strategy = "rebase"
            else:
                result = await checkout.merge(
                    action.parent, message=f"Sync {action.parent} into {action.branch}"
                )
                strategy = "merge"

            match result:
                case Ok(_):
                    logger.info("Synced %s from %s (%s)", action.branch, action.parent, strategy)
                    return ApplyOutcome(
                        action=action,
                        status="applied",
                        message=f"{action.branch} synced from {action.parent} ({strategy})",
                    )
                case Err(err):
                    await self._abort(checkout, strategy)
                    raise OperationError(
                        f"Sync of {action.branch} from {action.parent} failed: {err.message}",
                        remedy=conflict_command(action.branch, action.parent),
                    )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _abort(self, checkout: GitBackend, strategy: str) -> None:
        abort = checkout.rebase_abort if strategy == "rebase" else checkout.merge_abort
        match await abort():
            case Ok(_):
                logger.warning("Aborted %s in %s", strategy, checkout.path)
            case Err(err):
                # Nothing in progress (e.g. ff-only refused before starting).
                logger.debug("No %s to abort in %s: %s", strategy, checkout.path, err.message)

    async def _apply_prune(self, action: Action, *, force: bool) -> ApplyOutcome:
        branch = action.branch
        if not unwrap_or_raise(await self._repo.branch_exists(branch)):
            return ApplyOutcome(action=action, status="skipped", message=f"{branch} already gone")

        if not force:
            merged = await self._merged_anywhere(branch)
            if not merged:
                return ApplyOutcome(
                    action=action,
                    status="kept",
                    message=f"{branch} is not fully merged; rerun with --force to delete it",
                )

        match await self._repo.delete_branch(branch, force=True):
            case Ok(_):
                logger.info("Pruned %s", branch)
                return ApplyOutcome(action=action, status="applied", message=f"Deleted {branch}")
            case Err(err):
                raise OperationError(f"Could not delete {branch}: {err.message}")
        raise AssertionError("unreachable")  # pragma: no cover

    async def _merged_anywhere(self, branch: str) -> bool:
        """True when main or any integration branch already contains it."""
        candidates = [self._main_branch]
        candidates.extend(unwrap_or_raise(await self._repo.list_branches("prd/*", "epic/*")))
        for base in candidates:
            if base == branch or not unwrap_or_raise(await self._repo.branch_exists(base)):
                continue
            match await is_merged(self._repo, branch, base):
                case Ok(True):
                    return True
                case Ok(False):
                    continue
                case Err(err):
                    raise OperationError(err.message, context=err.context)
        return False


__all__ = [
    "Action",
    "ApplyOutcome",
    "BranchHierarchyNode",
    "BranchState",
    "Diagnosis",
    "GateIssue",
    "GateResult",
    "Reconciler",
    "conflict_command",
    "sync_command",
]
