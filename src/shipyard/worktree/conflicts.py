"""File-overlap conflicts between concurrently active worktrees.

Each active task's modified-file set is its diff against its own base plus
its uncommitted changes. Two tasks conflict when the sets intersect. The
matrix is recomputed from live refs on every call.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from itertools import combinations

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.artifacts import AgentRegistry
from shipyard.core.result import Err, GitError, Ok, Result
from shipyard.git import GitBackend
from shipyard.git import modified_files as git_modified_files
from shipyard.worktree.lifecycle import Worktree

logger = logging.getLogger(__name__)


class ConflictEdge(BaseModel):
    """Two tasks touching the same files. `agents` is sorted."""

    model_config = ConfigDict(frozen=True)

    agents: tuple[str, str]
    files: list[str]

    def other(self, task_id: str) -> str:
        return self.agents[1] if self.agents[0] == task_id else self.agents[0]


class ConflictMatrix(BaseModel):
    model_config = ConfigDict(frozen=True)

    agents: list[str] = Field(default_factory=list)
    files_by_agent: dict[str, list[str]] = Field(default_factory=dict)
    conflicts: list[ConflictEdge] = Field(default_factory=list)
    # task id -> why its changes could not be read (left out of the matrix)
    skipped: dict[str, str] = Field(default_factory=dict)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def conflicts_for(self, task_id: str) -> list[ConflictEdge]:
        """Every conflict edge involving `task_id`, whichever side it is on."""
        return [edge for edge in self.conflicts if task_id in edge.agents]

    def partners(self, task_id: str) -> list[str]:
        return sorted(edge.other(task_id) for edge in self.conflicts_for(task_id))


def build_conflict_matrix(
    files_by_agent: Mapping[str, Iterable[str]],
    skipped: Mapping[str, str] | None = None,
) -> ConflictMatrix:
    """Pairwise intersect modified-file sets."""
    normalized = {agent: sorted(set(files)) for agent, files in files_by_agent.items()}
    agents = sorted(normalized)

    conflicts: list[ConflictEdge] = []
    for left, right in combinations(agents, 2):
        shared = sorted(set(normalized[left]) & set(normalized[right]))
        if shared:
            conflicts.append(ConflictEdge(agents=(left, right), files=shared))

    return ConflictMatrix(
        agents=agents,
        files_by_agent=normalized,
        conflicts=conflicts,
        skipped=dict(skipped or {}),
    )


async def modified_files(repo: GitBackend, worktree: Worktree) -> Result[list[str], GitError]:
    """Files a task touched: committed diff against its base plus uncommitted work."""
    return await git_modified_files(repo, worktree.branch, worktree.base_branch, worktree.path)


async def _skip_reason(repo: GitBackend, worktree: Worktree, err: GitError) -> str:
    match await repo.branch_exists(worktree.branch):
        case Ok(False):
            return f"branch {worktree.branch} missing"
        case _:
            return err.message


async def collect_conflict_matrix(repo: GitBackend, worktrees: Iterable[Worktree]) -> ConflictMatrix:
    """Build the matrix from live refs.

    A task whose changes cannot be read (its branch or checkout is gone) is
    left out and listed in `skipped`; a stale registry entry never stops the
    other tasks from being compared.
    """
    files_by_agent: dict[str, list[str]] = {}
    skipped: dict[str, str] = {}
    for worktree in worktrees:
        match await modified_files(repo, worktree):
            case Ok(files):
                files_by_agent[worktree.task_id] = files
            case Err(err):
                skipped[worktree.task_id] = await _skip_reason(repo, worktree, err)
                logger.debug("Leaving %s out of the conflict matrix: %s", worktree.task_id, err.message)

    matrix = build_conflict_matrix(files_by_agent, skipped)
    logger.debug("Conflict matrix over %d agents: %d edge(s)", len(matrix.agents), len(matrix.conflicts))
    return matrix


def suggest_merge_order(matrix: ConflictMatrix, pending: Iterable[str]) -> list[str]:
    """Order pending merges so tasks with fewer conflict edges merge first.

    Ties go to the task with fewer modified files, then to the lower id.
    """
    return sorted(
        set(pending),
        key=lambda task_id: (
            len(matrix.conflicts_for(task_id)),
            len(matrix.files_by_agent.get(task_id, [])),
            task_id,
        ),
    )


def can_merge_without_conflict(task_id: str, matrix: ConflictMatrix) -> bool:
    return not matrix.conflicts_for(task_id)


def active_worktrees(registry: AgentRegistry, *, include: Iterable[str] = ()) -> list[Worktree]:
    """Worktrees of dispatched/running agents, plus any task ids in `include`."""
    wanted = set(include)
    worktrees: list[Worktree] = []
    for record in registry:
        if not (record.is_active or record.task_id in wanted):
            continue
        worktree = Worktree.from_record(record.task_id, record.worktree)
        if worktree is not None:
            worktrees.append(worktree)
    return worktrees


__all__ = [
    "ConflictEdge",
    "ConflictMatrix",
    "active_worktrees",
    "build_conflict_matrix",
    "can_merge_without_conflict",
    "collect_conflict_matrix",
    "modified_files",
    "suggest_merge_order",
]
