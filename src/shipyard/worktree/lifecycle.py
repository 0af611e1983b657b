"""Git worktree lifecycle for per-task isolation."""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from shipyard.core.result import (
    DirtyWorktree,
    Err,
    Ok,
    OperationError,
    ParentBranchMissing,
    unwrap_or_raise,
)
from shipyard.git import GitBackend, WorktreeInfo, divergence, is_merged
from shipyard.worktree.hierarchy import (
    TASK_PREFIX,
    BranchContext,
    Branching,
    hierarchy_chain,
    parent_branch,
    task_branch,
)

logger = logging.getLogger(__name__)


async def checkout_path_for(repo: GitBackend, branch: str) -> Path | None:
    """Path of the checkout that has `branch` checked out, if any."""
    for info in unwrap_or_raise(await repo.worktree_list()):
        if info.branch == branch:
            return info.path
    return None


@asynccontextmanager
async def branch_checkout(repo: GitBackend, branch: str, scratch_dir: Path) -> AsyncIterator[GitBackend]:
    """A checkout of `branch` to run a merge or rebase in.

    Uses the branch's existing checkout when it has one, otherwise a scratch
    worktree under `scratch_dir` that is removed afterwards. The main checkout
    is never switched to another branch.
    """
    existing = await checkout_path_for(repo, branch)
    if existing is not None:
        yield repo.at(existing)
        return

    scratch = scratch_dir / f"{branch.replace('/', '-')}-{uuid.uuid4().hex[:8]}"
    await asyncio.to_thread(scratch_dir.mkdir, parents=True, exist_ok=True)
    path = unwrap_or_raise(await repo.worktree_add(scratch, branch, new_branch=False))
    try:
        yield repo.at(path)
    finally:
        match await repo.worktree_remove(path, force=True):
            case Err(err):
                logger.warning("Failed to remove scratch worktree %s: %s", path, err.message)
                await repo.worktree_prune()
            case Ok(_):
                pass


class Worktree(BaseModel):
    """A task's isolated checkout, exclusively owned by that task.

    Persisted by the agent registry as an opaque value; `to_record` and
    `from_record` are the only places that know its shape.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    path: Path
    branch: str
    base_branch: str
    branching: Branching = Branching.FLAT

    @classmethod
    def from_record(cls, task_id: str, value: Mapping[str, Any] | None) -> Worktree | None:
        if not value or not value.get("path"):
            return None
        return cls(
            task_id=task_id,
            path=Path(str(value["path"])),
            branch=str(value.get("branch") or task_branch(task_id)),
            base_branch=str(value.get("base_branch") or value.get("baseBranch") or "main"),
            branching=Branching(value.get("branching") or Branching.FLAT.value),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "base_branch": self.base_branch,
            "branching": self.branching.value,
        }


@dataclass
class CleanupReport:
    """Outcome of removing a task's checkout and branches.

    Branch deletions are independent: `remote_branch_deleted` is None when
    there was no remote branch to delete.
    """

    task_id: str
    path: Path
    worktree_removed: bool = False
    local_branch_deleted: bool = False
    remote_branch_deleted: bool | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class WorktreeState:
    task_id: str
    path: Path
    branch: str
    base_branch: str
    exists: bool
    registered: bool
    clean: bool
    changed_files: int
    ahead: int
    behind: int


class WorktreeManager:
    """Creates and destroys task worktrees under one directory.

    Each task gets `<worktrees_dir>/<task_id>` checked out on `task/<task_id>`.
    No two tasks ever share a checkout.
    """

    def __init__(
        self,
        repo: GitBackend,
        worktrees_dir: Path,
        *,
        main_branch: str = "main",
        remote: str = "origin",
        delete_remote: bool = True,
    ) -> None:
        self._repo = repo
        self._worktrees_dir = worktrees_dir
        self._main_branch = main_branch
        self._remote = remote
        self._delete_remote = delete_remote

    @property
    def worktrees_dir(self) -> Path:
        return self._worktrees_dir

    @property
    def main_branch(self) -> str:
        return self._main_branch

    def path_for(self, task_id: str) -> Path:
        return self._worktrees_dir / task_id

    async def _branch_exists(self, branch: str) -> bool:
        return unwrap_or_raise(await self._repo.branch_exists(branch))

    async def spawn(self, task_id: str, context: BranchContext) -> Worktree:
        """Create the task's checkout on a new task branch off its parent.

        Raises:
            ParentBranchMissing: The parent integration branch does not exist
            OperationError: The checkout path or task branch already exists
        """
        parent = parent_branch("task", context, self._main_branch)
        branch = task_branch(task_id)
        path = self.path_for(task_id)

        if not await self._branch_exists(parent):
            chain = hierarchy_chain(context, self._main_branch)
            upstream = chain[chain.index(parent) - 1] if parent in chain[1:] else self._main_branch
            raise ParentBranchMissing(
                f"Parent branch {parent} does not exist",
                context={"task": task_id},
                remedy=f"git branch {parent} {upstream}",
            )

        if path.exists():
            raise OperationError(
                f"Worktree path already exists: {path}",
                context={"task": task_id},
                remedy=f"yard worktree cleanup {task_id}",
            )

        if await self._branch_exists(branch):
            raise OperationError(
                f"Task branch {branch} already exists",
                context={"task": task_id},
                remedy=f"yard worktree cleanup {task_id} --force",
            )

        await asyncio.to_thread(self._worktrees_dir.mkdir, parents=True, exist_ok=True)
        created = unwrap_or_raise(
            await self._repo.worktree_add(path, branch, new_branch=True, start_point=parent)
        )

        logger.info("Spawned worktree for %s at %s (%s from %s)", task_id, created, branch, parent)
        return Worktree(
            task_id=task_id,
            path=created,
            branch=branch,
            base_branch=parent,
            branching=context.branching,
        )

    async def find(self, task_id: str) -> WorktreeInfo | None:
        """The registered checkout of `task/<task_id>`, if any."""
        branch = task_branch(task_id)
        for info in unwrap_or_raise(await self._repo.worktree_list()):
            if info.branch == branch:
                return info
        return None

    async def cleanup(
        self,
        task_id: str,
        *,
        base_branch: str | None = None,
        force: bool = False,
    ) -> CleanupReport:
        """Remove a task's checkout and delete its branches.

        Refuses unless the task branch is provably merged into its base, or
        `force` is set. Local and remote branch deletion are attempted
        independently; a failure in one is reported and does not stop the
        other.

        Raises:
            OperationError: The branch is not merged and `force` is not set
            DirtyWorktree: The checkout has uncommitted changes and `force` is not set
        """
        branch = task_branch(task_id)
        base = base_branch or self._main_branch
        info = await self.find(task_id)
        path = info.path if info else self.path_for(task_id)
        report = CleanupReport(task_id=task_id, path=path)

        branch_exists = await self._branch_exists(branch)
        if branch_exists and not force:
            base_exists = await self._branch_exists(base)
            merged = base_exists and unwrap_or_raise(await is_merged(self._repo, branch, base))
            if not merged:
                raise OperationError(
                    f"{branch} is not merged into {base}",
                    context={"task": task_id},
                    remedy=f"yard worktree merge {task_id}  (or: yard worktree cleanup {task_id} --force)",
                )

        if info is not None:
            match await self._repo.worktree_remove(info.path, force=force):
                case Ok(_):
                    report.worktree_removed = True
                case Err(err):
                    if not force:
                        raise DirtyWorktree(
                            f"Cannot remove worktree {info.path}: {err.message}",
                            context={"task": task_id},
                            remedy=f"yard worktree cleanup {task_id} --force",
                        )
                    report.errors.append(f"worktree: {err.message}")
        elif force and path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
            report.worktree_removed = True

        await self._repo.worktree_prune()

        if branch_exists:
            # Merge state was verified above (or overridden), so -D is safe here.
            match await self._repo.delete_branch(branch, force=True):
                case Ok(_):
                    report.local_branch_deleted = True
                case Err(err):
                    logger.warning("Failed to delete local branch %s: %s", branch, err.message)
                    report.errors.append(f"local branch: {err.message}")

        if self._delete_remote:
            await self._delete_remote_branch(branch, report)

        logger.info(
            "Cleaned up %s (worktree removed: %s, local branch deleted: %s, remote: %s)",
            task_id,
            report.worktree_removed,
            report.local_branch_deleted,
            report.remote_branch_deleted,
        )
        return report

    async def _delete_remote_branch(self, branch: str, report: CleanupReport) -> None:
        match await self._repo.has_remote(self._remote):
            case Ok(False):
                return
            case Err(err):
                report.errors.append(f"remote branch: {err.message}")
                return
            case Ok(True):
                pass

        match await self._repo.ref_exists(f"{self._remote}/{branch}"):
            case Ok(False):
                return
            case Err(err):
                report.errors.append(f"remote branch: {err.message}")
                return
            case Ok(True):
                pass

        match await self._repo.delete_remote_branch(self._remote, branch):
            case Ok(_):
                report.remote_branch_deleted = True
            case Err(err):
                logger.warning("Failed to delete %s/%s: %s", self._remote, branch, err.message)
                report.remote_branch_deleted = False
                report.errors.append(f"remote branch: {err.message}")

    async def list_worktrees(self) -> list[WorktreeInfo]:
        """Registered checkouts whose branch is a task branch."""
        return [
            info
            for info in unwrap_or_raise(await self._repo.worktree_list())
            if info.branch.startswith(TASK_PREFIX)
        ]

    async def worktree_status(self, task_id: str, base_branch: str | None = None) -> WorktreeState:
        """Existence, cleanliness and ahead/behind of a task checkout."""
        branch = task_branch(task_id)
        base = base_branch or self._main_branch
        info = await self.find(task_id)
        path = info.path if info else self.path_for(task_id)

        changed: list[str] = []
        if path.exists():
            changed = unwrap_or_raise(await self._repo.at(path).changed_paths())

        ahead = behind = 0
        if await self._branch_exists(branch) and await self._branch_exists(base):
            counts = unwrap_or_raise(await divergence(self._repo, branch, base))
            ahead, behind = counts.ahead, counts.behind

        return WorktreeState(
            task_id=task_id,
            path=path,
            branch=branch,
            base_branch=base,
            exists=path.exists(),
            registered=info is not None,
            clean=not changed,
            changed_files=len(changed),
            ahead=ahead,
            behind=behind,
        )

    async def prune(self) -> None:
        """Prune stale worktree references."""
        unwrap_or_raise(await self._repo.worktree_prune())

    async def detect_orphaned_worktrees(self) -> list[Path]:
        """Directories under worktrees_dir that git no longer knows about."""
        if not self._worktrees_dir.exists():
            return []

        def _scan() -> list[Path]:
            return [d for d in self._worktrees_dir.iterdir() if d.is_dir() and not d.name.startswith(".")]

        candidates = await asyncio.to_thread(_scan)
        registered = {info.path.resolve() for info in unwrap_or_raise(await self._repo.worktree_list())}
        return [path for path in candidates if path.resolve() not in registered]

    async def prune_orphaned_worktrees(self) -> int:
        """Delete orphaned checkout directories and prune git's records.

        Returns:
            Number of directories removed
        """
        orphans = await self.detect_orphaned_worktrees()
        if orphans:
            logger.warning("Found %d orphaned worktrees: %s", len(orphans), [p.name for p in orphans])

        removed = 0
        for path in orphans:
            try:
                await asyncio.to_thread(shutil.rmtree, path)
                removed += 1
            except OSError as exc:
                logger.error("Failed to remove orphan %s: %s", path, exc)

        await self.prune()
        return removed


__all__ = [
    "CleanupReport",
    "Worktree",
    "WorktreeManager",
    "WorktreeState",
    "branch_checkout",
    "checkout_path_for",
]
