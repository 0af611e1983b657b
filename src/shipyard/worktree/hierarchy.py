"""Branch hierarchy model.

Pure functions from (kind, id, context) to branch names. Names are derived
from ids every time and never stored:

    flat:  task/T -> main
    prd:   task/T -> prd/P -> main          (epic/E -> prd/P as well)
    epic:  task/T -> epic/E -> prd/P -> main

A missing id drops that tier: an epic-mode task without an epic id parents to
its PRD branch, and without either to main.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from shipyard.core.dag import TaskNode

BranchKind = Literal["task", "epic", "prd"]

TASK_PREFIX = "task/"
EPIC_PREFIX = "epic/"
PRD_PREFIX = "prd/"

_PREFIXES: dict[str, BranchKind] = {TASK_PREFIX: "task", EPIC_PREFIX: "epic", PRD_PREFIX: "prd"}


class Branching(str, Enum):
    """How many integration tiers sit between a task branch and main."""

    FLAT = "flat"
    EPIC = "epic"
    PRD = "prd"


class BranchContext(BaseModel):
    """Where a task sits in the PRD/epic hierarchy."""

    model_config = ConfigDict(frozen=True)

    prd_id: str | None = None
    epic_id: str | None = None
    branching: Branching = Branching.FLAT


def context_for(task: TaskNode, branching: Branching | str = Branching.FLAT) -> BranchContext:
    """Hierarchy context of a task record under the given branching mode."""
    return BranchContext(prd_id=task.prd_id, epic_id=task.epic_id, branching=Branching(branching))


def task_branch(task_id: str) -> str:
    return f"{TASK_PREFIX}{task_id}"


def epic_branch(epic_id: str) -> str:
    return f"{EPIC_PREFIX}{epic_id}"


def prd_branch(prd_id: str) -> str:
    return f"{PRD_PREFIX}{prd_id}"


def branch_for(kind: BranchKind, entity_id: str) -> str:
    if kind == "task":
        return task_branch(entity_id)
    if kind == "epic":
        return epic_branch(entity_id)
    return prd_branch(entity_id)


def parse_branch(branch: str) -> tuple[BranchKind, str] | None:
    """Split a hierarchy branch name into (kind, id); None for anything else."""
    for prefix, kind in _PREFIXES.items():
        if branch.startswith(prefix) and len(branch) > len(prefix):
            return kind, branch[len(prefix) :]
    return None


def parent_branch(kind: BranchKind, context: BranchContext, main_branch: str = "main") -> str:
    """Branch a task, epic or PRD branch merges into."""
    if kind == "prd" or context.branching is Branching.FLAT:
        return main_branch

    if kind == "task" and context.branching is Branching.EPIC and context.epic_id:
        return epic_branch(context.epic_id)

    if context.prd_id:
        return prd_branch(context.prd_id)
    return main_branch


def hierarchy_chain(context: BranchContext, main_branch: str = "main") -> list[str]:
    """Integration branches above a task, top-down: [main, prd/P, epic/E]."""
    chain = [main_branch]
    if context.branching is Branching.FLAT:
        return chain
    if context.prd_id:
        chain.append(prd_branch(context.prd_id))
    if context.branching is Branching.EPIC and context.epic_id:
        chain.append(epic_branch(context.epic_id))
    return chain


def hierarchy_edges(
    context: BranchContext,
    main_branch: str = "main",
    task_ids: list[str] | None = None,
) -> list[tuple[str, str]]:
    """(branch, parent) pairs top-down, ending with the given task branches."""
    chain = hierarchy_chain(context, main_branch)
    edges = [(child, parent) for parent, child in zip(chain, chain[1:])]
    task_parent = parent_branch("task", context, main_branch)
    edges.extend((task_branch(task_id), task_parent) for task_id in task_ids or [])
    return edges


__all__ = [
    "BranchContext",
    "BranchKind",
    "Branching",
    "branch_for",
    "context_for",
    "epic_branch",
    "hierarchy_chain",
    "hierarchy_edges",
    "parent_branch",
    "parse_branch",
    "prd_branch",
    "task_branch",
]
