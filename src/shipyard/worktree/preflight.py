"""Spawn preflight and completion postflight checks.

Both checks only read. They gather git state, task dependencies, the branch
gate and the conflict matrix into one report with a recommended next step.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from shipyard.core.artifacts import AgentRegistry, TaskSnapshot
from shipyard.core.config import AppConfig
from shipyard.core.result import OperationError, unwrap_or_raise
from shipyard.git import GitBackend, trial_merge, uncommitted_paths
from shipyard.worktree.conflicts import (
    ConflictEdge,
    active_worktrees,
    collect_conflict_matrix,
    suggest_merge_order,
)
from shipyard.worktree.hierarchy import (
    BranchContext,
    Branching,
    context_for,
    parent_branch,
    task_branch,
)
from shipyard.worktree.lifecycle import Worktree
from shipyard.worktree.merge import cascade
from shipyard.worktree.reconcile import (
    Action,
    BranchState,
    Reconciler,
    conflict_command,
)

logger = logging.getLogger(__name__)

NextAction = Literal["merge_ready", "merge_with_conflicts", "no_changes", "failed", "in_progress"]

ESCALATE_DIRTY = "Escalate: uncommitted changes"
ESCALATE_NO_COMMITS = "Escalate: repository needs initial commit"


class PreflightReport(BaseModel):
    task_id: str | None = None
    for_merge: bool = False
    context: BranchContext | None = None
    parent_branch: str | None = None
    can_spawn: bool = True
    blockers: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    pending_merges: list[str] = Field(default_factory=list)
    running_agents: list[str] = Field(default_factory=list)
    merge_order: list[str] = Field(default_factory=list)
    conflicts: list[ConflictEdge] = Field(default_factory=list)
    recommended_action: str | None = None
    actions: list[Action] = Field(default_factory=list)


class PostflightReport(BaseModel):
    task_id: str
    agent_status: str
    branch: str
    parent_branch: str
    commits: int = 0
    conflict_files: list[str] = Field(default_factory=list)
    next_action: NextAction
    merge_position: int | None = None
    merge_partners: list[str] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cascade: list[Action] = Field(default_factory=list)


def resolve_context(
    config: AppConfig,
    task_id: str,
    snapshot: TaskSnapshot | None,
    registry: AgentRegistry | None = None,
) -> BranchContext:
    """Hierarchy context of a task from the snapshot, falling back to its agent record."""
    if snapshot is not None:
        for task in snapshot.tasks:
            if task.id == task_id:
                return context_for(task, config.git.branching)

    record = registry.get(task_id) if registry is not None else None
    if record is not None:
        worktree = Worktree.from_record(task_id, record.worktree)
        branching = worktree.branching if worktree else Branching(config.git.branching)
        return BranchContext(prd_id=record.prd_id, epic_id=record.epic_id, branching=branching)

    return BranchContext(branching=Branching(config.git.branching))


async def _git_blockers(repo: GitBackend, config: AppConfig, report: PreflightReport) -> str | None:
    """Main-checkout checks; returns the escalation they call for, if any."""
    escalation = None
    changed = unwrap_or_raise(await uncommitted_paths(repo, config.state_paths))
    if changed:
        report.blockers.append(f"Main checkout has {len(changed)} uncommitted change(s)")
        escalation = ESCALATE_DIRTY
    if not unwrap_or_raise(await repo.has_commits()):
        report.blockers.append("No commits in repository (git worktree requires at least one commit)")
        escalation = escalation or ESCALATE_NO_COMMITS
    return escalation


async def preflight(
    repo: GitBackend,
    config: AppConfig,
    registry: AgentRegistry,
    snapshot: TaskSnapshot | None = None,
    *,
    task_id: str | None = None,
    context: BranchContext | None = None,
    for_merge: bool = False,
) -> PreflightReport:
    """Decide whether a new worker can be spawned.

    Without a task id only repository-wide checks run. With one, its
    dependencies, its branch hierarchy and its parent branch are checked too.
    In for-merge mode hierarchy drift is a warning rather than a blocker.
    """
    report = PreflightReport(task_id=task_id, for_merge=for_merge)
    main = config.git.main_branch

    escalation = await _git_blockers(repo, config, report)

    reconciler = Reconciler(
        repo,
        main_branch=main,
        remote=config.git.remote,
        sync_strategy=config.git.sync_strategy,
    )
    lag = await reconciler.remote_lag()
    if lag:
        report.warnings.append(
            f"{main} is {lag} commit(s) behind {config.git.remote}/{main} (consider: git pull)"
        )

    report.running_agents = sorted(r.task_id for r in registry.active())
    report.pending_merges = sorted(r.task_id for r in registry.pending_merges())

    matrix = await collect_conflict_matrix(
        repo, active_worktrees(registry, include=report.pending_merges)
    )
    for stale, reason in sorted(matrix.skipped.items()):
        report.warnings.append(f"{stale}: {reason}")
    mergeable = [t for t in report.pending_merges if t not in matrix.skipped]
    report.merge_order = suggest_merge_order(matrix, mergeable)
    if task_id is not None and task_id in matrix.agents:
        report.conflicts = matrix.conflicts_for(task_id)
    else:
        report.conflicts = list(matrix.conflicts)
    if matrix.has_conflicts:
        report.warnings.append(
            f"{len(matrix.conflicts)} potential conflict(s) between active worktrees"
        )

    if task_id is not None:
        if snapshot is not None:
            graph = snapshot.graph()
            task = graph.get(task_id)
            for blocker in graph.remaining_blockers(task):
                status = graph.tasks[blocker].raw_status if blocker in graph else "missing"
                report.blockers.append(f"Blocked by {blocker} ({status or 'no status'})")

        context = context or resolve_context(config, task_id, snapshot, registry)
        report.context = context
        parent = parent_branch("task", context, main)
        report.parent_branch = parent

        gate = await reconciler.branch_gate(context, task_id=task_id, for_merge=for_merge)
        for issue in gate.blockers:
            report.blockers.append(issue.message)
        for issue in gate.warnings:
            report.warnings.append(issue.message)
        for issue in [*gate.blockers, *gate.warnings]:
            kind = "sync" if issue.state in (BranchState.BEHIND, BranchState.DIVERGED) else "escalate"
            report.actions.append(
                Action(
                    kind=kind,
                    branch=issue.branch,
                    parent=issue.parent,
                    message=issue.message,
                    command=issue.command,
                )
            )

        gated = {issue.branch for issue in gate.blockers}
        gated.update(issue.parent for issue in gate.blockers if issue.state is BranchState.ORPHAN)
        if parent not in gated and not unwrap_or_raise(await repo.branch_exists(parent)):
            report.blockers.append(f"Parent branch {parent} does not exist")
            report.actions.append(
                Action(
                    kind="escalate",
                    branch=parent,
                    message=f"Create {parent} before spawning {task_id}",
                    command=f"git branch {parent} {main}" if parent != main else None,
                )
            )

    report.can_spawn = not report.blockers
    if not report.can_spawn:
        if escalation is not None:
            report.recommended_action = escalation
        elif report.actions and report.actions[0].command:
            report.recommended_action = f"Run: {report.actions[0].command}"
        else:
            report.recommended_action = f"Escalate: {report.blockers[0]}"
    elif report.merge_order:
        report.recommended_action = f"Consider merging: {report.merge_order[0]}"

    logger.debug(
        "Preflight %s: can_spawn=%s blockers=%d warnings=%d",
        task_id or "(repository)",
        report.can_spawn,
        len(report.blockers),
        len(report.warnings),
    )
    return report


async def postflight(
    repo: GitBackend,
    config: AppConfig,
    registry: AgentRegistry,
    task_id: str,
    snapshot: TaskSnapshot | None = None,
) -> PostflightReport:
    """Recommend what to do with a worker's output once it stopped.

    Raises:
        OperationError: No agent record exists for the task
    """
    record = registry.get(task_id)
    if record is None:
        raise OperationError(
            f"No agent found for task: {task_id}",
            remedy=f"yard worktree status  (known agents: {len(registry)})",
        )

    context = resolve_context(config, task_id, snapshot, registry)
    worktree = Worktree.from_record(task_id, record.worktree)
    branch = worktree.branch if worktree else task_branch(task_id)
    parent = worktree.base_branch if worktree else parent_branch("task", context, config.git.main_branch)

    commits = 0
    conflict_files: list[str] = []
    if unwrap_or_raise(await repo.branch_exists(branch)) and unwrap_or_raise(
        await repo.branch_exists(parent)
    ):
        commits = unwrap_or_raise(await repo.rev_list_count(f"{parent}..{branch}"))
        if commits:
            conflict_files = unwrap_or_raise(await trial_merge(repo, branch, parent))

    actions: list[Action] = []
    next_action: NextAction
    if record.status in ("completed", "running"):
        if commits == 0:
            next_action = "no_changes"
            actions.append(
                Action(
                    kind="escalate",
                    branch=branch,
                    parent=parent,
                    message="No changes to merge",
                    command=f"yard worktree cleanup {task_id} --force",
                )
            )
        elif conflict_files:
            next_action = "merge_with_conflicts"
            actions.append(
                Action(
                    kind="escalate",
                    branch=branch,
                    parent=parent,
                    message=(
                        f"{branch} conflicts with {parent} in {', '.join(conflict_files)}; "
                        "resolve in the task worktree, then merge"
                    ),
                    command=conflict_command(branch, parent),
                )
            )
        else:
            next_action = "merge_ready"
            actions.append(
                Action(
                    kind="escalate",
                    branch=branch,
                    parent=parent,
                    message=f"Ready to merge {commits} commit(s) into {parent}",
                    command=f"yard worktree merge {task_id}",
                )
            )
    elif record.status in ("failed", "error"):
        next_action = "failed"
        actions.append(
            Action(
                kind="escalate",
                branch=branch,
                message="Agent failed; review the failure and decide: retry or reject",
                command=f"yard worktree cleanup {task_id} --force",
            )
        )
    else:
        next_action = "in_progress"

    report = PostflightReport(
        task_id=task_id,
        agent_status=record.status,
        branch=branch,
        parent_branch=parent,
        commits=commits,
        conflict_files=conflict_files,
        next_action=next_action,
        actions=actions,
    )

    if next_action in ("merge_ready", "merge_with_conflicts"):
        pending = {r.task_id for r in registry.pending_merges()} | {task_id}
        matrix = await collect_conflict_matrix(repo, active_worktrees(registry, include=pending))
        order = suggest_merge_order(matrix, pending - matrix.skipped.keys())
        if task_id in order:
            report.merge_position = order.index(task_id) + 1
        report.warnings = [f"{stale}: {reason}" for stale, reason in sorted(matrix.skipped.items())]
        report.merge_partners = matrix.partners(task_id)
        if snapshot is not None:
            report.cascade = cascade(task_id, context, snapshot, registry)

    return report


__all__ = [
    "NextAction",
    "PostflightReport",
    "PreflightReport",
    "postflight",
    "preflight",
    "resolve_context",
]
