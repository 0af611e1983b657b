"""Merge and promotion orchestration.

Every integration follows one contract:

    precheck -> checkout target -> apply strategy -> (abort on failure)

Prechecks: the source checkout is clean, the main checkout is clean, the
target branch exists and the source has commits the target lacks. A failed
merge, squash or rebase is aborted and the main checkout is put back on the
branch it started on before MergeConflict is raised, so the repository is
never left mid-operation.

Strategies:
    merge   merge --no-ff with "Merge <id> into <target>"
    squash  merge --squash, then one commit "<id>: squashed merge from <source>"
    rebase  rebase source onto target in the source's checkout, then fast-forward
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.artifacts import RETIRED_AGENT_STATUSES, AgentRegistry, TaskSnapshot
from shipyard.core.config import AppConfig, MergeStrategy
from shipyard.core.result import (
    DirtyWorktree,
    Err,
    MergeConflict,
    Ok,
    OperationError,
    ParentBranchMissing,
    unwrap_or_raise,
)
from shipyard.git import GitBackend, is_merged, uncommitted_paths
from shipyard.worktree.hierarchy import (
    BranchContext,
    Branching,
    epic_branch,
    prd_branch,
)
from shipyard.worktree.lifecycle import (
    Worktree,
    WorktreeManager,
    branch_checkout,
    checkout_path_for,
)
from shipyard.worktree.reconcile import Action

logger = logging.getLogger(__name__)

MergeLevel = Literal["task", "epic", "prd"]
PromoteLevel = Literal["epic", "prd"]


class MergeRecord(BaseModel):
    """What an integration did (or would do, for a dry run)."""

    model_config = ConfigDict(frozen=True)

    level: MergeLevel
    id: str
    source: str
    target: str
    strategy: MergeStrategy
    commits: int
    merged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    commit: str | None = None
    cleaned: bool = False
    dry_run: bool = False

    def metadata(self) -> dict[str, Any]:
        """Fields appended to the agent registry's worktree value."""
        return {
            "merge_strategy": self.strategy,
            "merged_to": self.target,
            "merged_at": self.merged_at.isoformat(),
            "merged_commits": self.commits,
        }


class MergeOrchestrator:
    """Folds task, epic and PRD branches into their parents.

    Shared-branch mutations run serially through one git process at a time;
    callers must not merge into the same target concurrently.
    """

    def __init__(
        self,
        repo: GitBackend,
        config: AppConfig,
        manager: WorktreeManager | None = None,
        scratch_dir: Path | None = None,
    ) -> None:
        self._repo = repo
        self._config = config
        self._manager = manager
        self._scratch_dir = scratch_dir or config.worktrees_dir / ".sync"

    def default_strategy(self, target: str) -> MergeStrategy:
        return self._config.strategy_for_target(target)

    # -------------------------------------------------------------------------
    # Prechecks
    # -------------------------------------------------------------------------

    async def _require_clean(self, checkout: GitBackend, label: str, remedy: str) -> None:
        changed = unwrap_or_raise(await uncommitted_paths(checkout, self._config.state_paths))
        if changed:
            raise DirtyWorktree(
                f"{label} has uncommitted changes ({len(changed)} file(s))",
                context={"path": str(checkout.path)},
                remedy=remedy,
            )

    async def _precheck(self, source: str, target: str, entity_id: str) -> int:
        """Verify both branches and return the number of commits to integrate."""
        if not unwrap_or_raise(await self._repo.branch_exists(source)):
            raise OperationError(f"Branch {source} does not exist", context={"id": entity_id})
        if not unwrap_or_raise(await self._repo.branch_exists(target)):
            raise ParentBranchMissing(
                f"Target branch {target} does not exist",
                context={"id": entity_id},
                remedy=f"git branch {target} {self._config.git.main_branch}",
            )

        await self._require_clean(
            self._repo,
            "Main checkout",
            remedy=f"git -C {self._repo.path} stash  (or commit the changes)",
        )

        source_path = await checkout_path_for(self._repo, source)
        if source_path is not None and source_path.exists():
            await self._require_clean(
                self._repo.at(source_path),
                f"Checkout of {source}",
                remedy=f"git -C {source_path} add -A && git -C {source_path} commit",
            )

        commits = unwrap_or_raise(await self._repo.rev_list_count(f"{target}..{source}"))
        if commits == 0:
            raise OperationError(
                f"No commits to merge from {source} into {target}",
                context={"id": entity_id},
            )
        return commits

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _integrate(
        self,
        *,
        level: MergeLevel,
        entity_id: str,
        source: str,
        target: str,
        strategy: MergeStrategy,
        dry_run: bool,
    ) -> MergeRecord:
        commits = await self._precheck(source, target, entity_id)
        if dry_run:
            return MergeRecord(
                level=level,
                id=entity_id,
                source=source,
                target=target,
                strategy=strategy,
                commits=commits,
                dry_run=True,
            )

        target_path = await checkout_path_for(self._repo, target)
        original = unwrap_or_raise(await self._repo.current_branch())
        if original == "HEAD":
            # Detached: come back to the same commit, not to whatever HEAD becomes.
            original = unwrap_or_raise(await self._repo.rev_parse("HEAD"))
        switched = False

        if target_path is None or target_path.resolve() == self._repo.path.resolve():
            target_checkout: GitBackend = self._repo
            if original != target:
                unwrap_or_raise(await self._repo.checkout_branch(target))
                switched = True
        else:
            target_checkout = self._repo.at(target_path)
            await self._require_clean(
                target_checkout,
                f"Checkout of {target}",
                remedy=f"git -C {target_path} stash",
            )

        try:
            commit = await self._apply_strategy(
                target_checkout,
                entity_id=entity_id,
                source=source,
                target=target,
                strategy=strategy,
            )
        finally:
            if switched:
                match await self._repo.checkout_branch(original):
                    case Err(err):
                        logger.warning("Could not return to %s: %s", original, err.message)
                    case Ok(_):
                        pass

        logger.info("Merged %s into %s (%s, %d commit(s))", source, target, strategy, commits)
        return MergeRecord(
            level=level,
            id=entity_id,
            source=source,
            target=target,
            strategy=strategy,
            commits=commits,
            commit=commit,
        )

    async def _apply_strategy(
        self,
        checkout: GitBackend,
        *,
        entity_id: str,
        source: str,
        target: str,
        strategy: MergeStrategy,
    ) -> str:
        match strategy:
            case "merge":
                result = await checkout.merge(source, no_ff=True, message=f"Merge {entity_id} into {target}")
                if isinstance(result, Err):
                    await self._abort(checkout, checkout.merge_abort, "merge")
                    raise MergeConflict(
                        f"Merge of {source} into {target} failed: {result.error.message}",
                        context={"id": entity_id},
                        remedy=f"git checkout {target} && git merge {source}",
                    )
                return result.value

            case "squash":
                staged = await checkout.merge_squash(source)
                if isinstance(staged, Err):
                    await self._abort(checkout, checkout.reset_merge, "squash")
                    raise MergeConflict(
                        f"Squash of {source} into {target} failed: {staged.error.message}",
                        context={"id": entity_id},
                        remedy=f"git checkout {target} && git merge --squash {source}",
                    )
                committed = await checkout.commit(f"{entity_id}: squashed merge from {source}")
                if isinstance(committed, Err):
                    await self._abort(checkout, checkout.reset_merge, "squash")
                    raise OperationError(
                        f"Squash commit on {target} failed: {committed.error.message}",
                        context={"id": entity_id},
                    )
                return committed.value

            case "rebase":
                async with branch_checkout(self._repo, source, self._scratch_dir) as source_checkout:
                    rebased = await source_checkout.rebase(target)
                    if isinstance(rebased, Err):
                        await self._abort(source_checkout, source_checkout.rebase_abort, "rebase")
                        raise MergeConflict(
                            f"Rebase of {source} onto {target} failed: {rebased.error.message}",
                            context={"id": entity_id},
                            remedy=f"git checkout {source} && git rebase {target}",
                        )
                forwarded = await checkout.merge(source, ff_only=True)
                if isinstance(forwarded, Err):
                    raise OperationError(
                        f"Fast-forward of {target} to {source} failed: {forwarded.error.message}",
                        context={"id": entity_id},
                    )
                return forwarded.value

        raise OperationError(f"Unknown merge strategy: {strategy}")

    async def _abort(self, checkout: GitBackend, abort: Any, operation: str) -> None:
        match await abort():
            case Ok(_):
                logger.warning("Aborted %s in %s", operation, checkout.path)
            case Err(err):
                logger.error("Abort of %s in %s failed: %s", operation, checkout.path, err.message)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def merge_task(
        self,
        worktree: Worktree,
        *,
        strategy: MergeStrategy | None = None,
        cleanup: bool = True,
        dry_run: bool = False,
    ) -> MergeRecord:
        """Merge a task branch into its base and optionally clean up.

        Raises:
            DirtyWorktree: Task or main checkout has uncommitted changes
            ParentBranchMissing: The base branch does not exist
            MergeConflict: The strategy stopped on conflicts (already aborted)
            OperationError: Nothing to merge, or another git failure
        """
        target = worktree.base_branch
        chosen = strategy or self.default_strategy(target)
        record = await self._integrate(
            level="task",
            entity_id=worktree.task_id,
            source=worktree.branch,
            target=target,
            strategy=chosen,
            dry_run=dry_run,
        )
        if dry_run or not cleanup or self._manager is None:
            return record

        try:
            await self._manager.cleanup(worktree.task_id, base_branch=target)
        except OperationError as exc:
            logger.warning("Merged %s but cleanup failed: %s", worktree.task_id, exc.message)
            return record
        return record.model_copy(update={"cleaned": True})

    async def promote(
        self,
        level: PromoteLevel,
        entity_id: str,
        *,
        prd_id: str | None = None,
        strategy: MergeStrategy | None = None,
        dry_run: bool = False,
    ) -> MergeRecord:
        """Merge an epic branch into its PRD branch, or a PRD branch into main."""
        if level == "epic":
            if not prd_id:
                raise OperationError(
                    f"Promoting epic {entity_id} requires its PRD id",
                    remedy=f"yard worktree promote epic {entity_id} --prd <PRD>",
                )
            source, target = epic_branch(entity_id), prd_branch(prd_id)
        else:
            source, target = prd_branch(entity_id), self._config.git.main_branch

        return await self._integrate(
            level=level,
            entity_id=entity_id,
            source=source,
            target=target,
            strategy=strategy or self.default_strategy(target),
            dry_run=dry_run,
        )


def record_merge(registry: AgentRegistry, record: MergeRecord) -> None:
    """Append merge metadata to the task's registry entry and mark it merged."""
    if record.level != "task" or record.dry_run:
        return
    registry.mark_merged(record.id, record.metadata())
    if record.cleaned:
        registry.mark_cleaned(record.id)


class RegistryUpdate(BaseModel):
    """One agent record brought in line with git by `reconcile_registry`."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    kind: Literal["merged", "missing"]
    reason: str
    status: Literal["planned", "applied", "failed"] = "planned"
    message: str = ""


async def _merged_into_base(repo: GitBackend, worktree: Worktree) -> bool:
    for branch in (worktree.branch, worktree.base_branch):
        if not unwrap_or_raise(await repo.branch_exists(branch)):
            return False
    match await is_merged(repo, worktree.branch, worktree.base_branch):
        case Ok(merged):
            return merged
        case Err(err):
            logger.warning("Cannot tell whether %s is merged: %s", worktree.branch, err.message)
            return False
    return False  # pragma: no cover


async def reconcile_registry(
    repo: GitBackend,
    registry: AgentRegistry,
    manager: WorktreeManager,
    *,
    dry_run: bool = False,
) -> list[RegistryUpdate]:
    """Retire agent records that git has already moved past.

    A completed task (or one with a PR) whose branch is already in its base,
    merged outside shipyard or squash-merged through its PR, gets its worktree
    cleaned up and its record marked merged. A record whose checkout directory
    is gone is marked missing. The registry is changed in memory only; the
    caller saves it.
    """
    updates: list[RegistryUpdate] = []
    for record in list(registry):
        if record.status in RETIRED_AGENT_STATUSES:
            continue
        worktree = Worktree.from_record(record.task_id, record.worktree)
        if worktree is None or (record.worktree or {}).get("cleaned_at"):
            continue

        if (record.status == "completed" or record.pr_url) and await _merged_into_base(repo, worktree):
            update = RegistryUpdate(
                task_id=record.task_id,
                kind="merged",
                reason=f"{worktree.branch} is already merged into {worktree.base_branch}",
            )
            if not dry_run:
                update = await _retire_merged(registry, manager, worktree, update)
        elif not worktree.path.exists():
            update = RegistryUpdate(
                task_id=record.task_id,
                kind="missing",
                reason=f"worktree {worktree.path} no longer exists",
            )
            if not dry_run:
                registry.mark_missing(record.task_id)
                update = update.model_copy(
                    update={"status": "applied", "message": f"{record.task_id} marked missing"}
                )
        else:
            continue
        updates.append(update)

    logger.debug("Registry reconciliation: %d update(s)", len(updates))
    return updates


async def _retire_merged(
    registry: AgentRegistry,
    manager: WorktreeManager,
    worktree: Worktree,
    update: RegistryUpdate,
) -> RegistryUpdate:
    try:
        cleaned = await manager.cleanup(worktree.task_id, base_branch=worktree.base_branch)
    except OperationError as exc:
        logger.warning("Could not clean up merged task %s: %s", worktree.task_id, exc.message)
        return update.model_copy(update={"status": "failed", "message": exc.message})

    registry.mark_merged(
        worktree.task_id,
        {
            "merged_to": worktree.base_branch,
            "merged_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    registry.mark_cleaned(worktree.task_id)
    removed = [
        label
        for label, done in (("worktree", cleaned.worktree_removed), ("branch", cleaned.local_branch_deleted))
        if done
    ]
    return update.model_copy(
        update={"status": "applied", "message": f"Cleaned up {', '.join(removed) or 'nothing left'}"}
    )


def cascade(
    task_id: str,
    context: BranchContext,
    snapshot: TaskSnapshot,
    registry: AgentRegistry | None = None,
) -> list[Action]:
    """Promotions that become possible after `task_id` merged.

    Recommends `promote epic` when no other task of the epic is still open or
    has an active agent, and `promote prd` when additionally nothing else in
    the PRD is open. Nothing is executed.
    """
    if context.branching is Branching.FLAT or not context.prd_id:
        return []

    active = {r.task_id for r in registry.active()} if registry is not None else set()

    def still_open(task_ids: list[str]) -> bool:
        graph_tasks = {t.id: t for t in snapshot.tasks}
        return any(
            tid != task_id and (graph_tasks[tid].is_open or tid in active)
            for tid in task_ids
            if tid in graph_tasks
        )

    actions: list[Action] = []
    prd = context.prd_id

    if context.branching is Branching.EPIC and context.epic_id:
        epic = context.epic_id
        epic_tasks = [t.id for t in snapshot.tasks if t.epic_id == epic]
        if still_open(epic_tasks):
            return []
        actions.append(
            Action(
                kind="promote",
                branch=epic_branch(epic),
                parent=prd_branch(prd),
                message=f"All tasks in epic {epic} are done; promote it into {prd_branch(prd)}",
                command=f"yard worktree promote epic {epic} --prd {prd}",
            )
        )
        other_epics_open = any(
            e.is_open for e in snapshot.epics.values() if e.prd_id == prd and e.id != epic
        )
        if other_epics_open:
            return actions

    prd_tasks = [t.id for t in snapshot.tasks if t.prd_id == prd]
    if still_open(prd_tasks):
        return actions
    actions.append(
        Action(
            kind="promote",
            branch=prd_branch(prd),
            parent=None,
            message=f"All work in {prd} is done; promote it into main",
            command=f"yard worktree promote prd {prd}",
        )
    )
    return actions


__all__ = [
    "MergeLevel",
    "MergeOrchestrator",
    "MergeRecord",
    "PromoteLevel",
    "RegistryUpdate",
    "cascade",
    "reconcile_registry",
    "record_merge",
]
