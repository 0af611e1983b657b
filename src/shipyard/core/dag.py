"""Task dependency graph models and traversal.

This module defines the typed task records the rest of shipyard consumes and
the dependency graph built from them. The graph is rebuilt from a task
snapshot on every query; nothing here caches across calls.

Key classes:
- TaskStatus: Canonical task lifecycle status with alias normalization
- TaskNode: One task record, constructed once at the artifact boundary
- DependencyGraph: Tasks plus the reverse "dependents" index, with readiness,
  cycle, critical-path and impact queries
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.result import ShipyardError

logger = logging.getLogger(__name__)

_ALIAS_KEY = re.compile(r"[\s_-]+")
_LEADING_ID = re.compile(r"^\s*([^\s:,;]+)")


class TaskStatus(str, Enum):
    """Lifecycle status for a task."""

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    BLOCKED = "Blocked"
    DONE = "Done"
    CANCELLED = "Cancelled"

    @classmethod
    def normalize(cls, raw: str | None) -> TaskStatus | None:
        """Map a free-form status string to its canonical value.

        Matching ignores case, spaces, dashes and underscores, so "in-progress",
        "WIP" and "In Progress" all normalize to IN_PROGRESS. Returns None for
        strings with no known alias.
        """
        if not raw:
            return None
        return _STATUS_ALIASES.get(_ALIAS_KEY.sub("", raw.lower()))

    @property
    def resolved(self) -> bool:
        """Done and Cancelled tasks no longer block anything."""
        return self in (TaskStatus.DONE, TaskStatus.CANCELLED)


_STATUS_ALIASES: dict[str, TaskStatus] = {
    "notstarted": TaskStatus.NOT_STARTED,
    "todo": TaskStatus.NOT_STARTED,
    "pending": TaskStatus.NOT_STARTED,
    "new": TaskStatus.NOT_STARTED,
    "inprogress": TaskStatus.IN_PROGRESS,
    "wip": TaskStatus.IN_PROGRESS,
    "started": TaskStatus.IN_PROGRESS,
    "working": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "stuck": TaskStatus.BLOCKED,
    "done": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "finished": TaskStatus.DONE,
    "cancelled": TaskStatus.CANCELLED,
    "canceled": TaskStatus.CANCELLED,
    "cancel": TaskStatus.CANCELLED,
    "dropped": TaskStatus.CANCELLED,
    "abandoned": TaskStatus.CANCELLED,
}


def blocker_id(entry: str) -> str | None:
    """Leading id token of a blocked_by entry ("T001 - setup db" -> "T001")."""
    match = _LEADING_ID.match(entry)
    return match.group(1) if match else None


class UnknownTaskError(ShipyardError):
    """Raised when a query names a task id the snapshot does not contain."""


class TaskNode(BaseModel):
    """A single task in the dependency graph.

    Attributes:
        id: Unique task identifier (e.g., 'T001')
        status: Canonical status, or None when the raw status is not recognised
        raw_status: Status string exactly as the record stated it
        blocked_by: Blocker ids in record order, duplicates preserved
        raw_blocked_by: Blocker entries exactly as written (e.g., 'T001 - setup')
        epic_id: Parent epic id, if any
        prd_id: Parent PRD id, if any
        title: Human title
        source: File the record was read from, if known
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Unique task identifier (e.g., 'T001')")
    status: TaskStatus | None = Field(default=TaskStatus.NOT_STARTED)
    raw_status: str = Field(default="", description="Status string as written in the record")
    blocked_by: tuple[str, ...] = Field(default=())
    raw_blocked_by: tuple[str, ...] = Field(default=())
    epic_id: str | None = None
    prd_id: str | None = None
    title: str = ""
    source: str | None = None

    @property
    def resolved(self) -> bool:
        return self.status is not None and self.status.resolved

    @property
    def is_open(self) -> bool:
        return not self.resolved

    def blockers(self) -> list[str]:
        """Distinct blocker ids, self-references excluded, record order kept."""
        return [b for b in dict.fromkeys(self.blocked_by) if b != self.id]


class CriticalPath(BaseModel):
    """Longest downstream chain starting at a task.

    `length` counts edges: a chain A -> B -> C -> D has length 3.
    """

    model_config = ConfigDict(frozen=True)

    length: int
    path: list[str]


class RankedTask(BaseModel):
    """A ready task with the scores used to order the ready set."""

    model_config = ConfigDict(frozen=True)

    task: TaskNode
    total_unblocked: int
    critical_path_length: int


class StillBlocked(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    waiting_on: list[str]


class ImpactReport(BaseModel):
    """What finishing a task would unblock."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    direct_unblocks: list[str]
    still_blocked: list[StillBlocked]
    total_unblocked: int
    critical_path_length: int
    critical_path: list[str]


class Bottleneck(BaseModel):
    model_config = ConfigDict(frozen=True)

    task: TaskNode
    dependents: int
    critical_path_length: int
    score: int


class DependencyGraph(BaseModel):
    """Task graph with a reverse "dependents" index.

    Edges run from a blocker to the tasks it blocks. Build with
    `DependencyGraph.build(nodes)`; the dependents index is derived, never
    supplied by callers.

    Attributes:
        tasks: All tasks keyed by id, in snapshot order
        dependents: Blocker id -> ids of tasks it blocks (self-references
            excluded, each dependent listed once)
    """

    model_config = ConfigDict(frozen=True)

    tasks: dict[str, TaskNode] = Field(default_factory=dict)
    dependents: dict[str, list[str]] = Field(default_factory=dict)

    @classmethod
    def build(cls, nodes: Iterable[TaskNode]) -> DependencyGraph:
        tasks: dict[str, TaskNode] = {}
        for node in nodes:
            if node.id in tasks:
                logger.warning("Duplicate task id %s; the later definition wins", node.id)
            tasks[node.id] = node

        dependents: dict[str, list[str]] = {}
        for task_id, node in tasks.items():
            for blocker in node.blockers():
                dependents.setdefault(blocker, []).append(task_id)

        return cls(tasks=tasks, dependents=dependents)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def get(self, task_id: str) -> TaskNode:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise UnknownTaskError(
                f"Task not found: {task_id}",
                remedy="yard deps validate",
            ) from None

    def dependents_of(self, task_id: str) -> list[str]:
        return self.dependents.get(task_id, [])

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def detect_cycles(self) -> list[list[str]]:
        """Find dependency cycles with a depth-first walk over blocker edges.

        A node met again while still on the walk's stack closes a cycle; the
        cycle is reported as the path from its first occurrence back to
        itself, e.g. ['A', 'B', 'A']. Self-references are not cycles here.

        Returns:
            One path per cycle found, empty for an acyclic graph
        """
        cycles: list[list[str]] = []
        visited: set[str] = set()

        for start in self.tasks:
            if start in visited:
                continue

            path: list[str] = []
            on_path: set[str] = set()
            stack: list[tuple[str, Iterator[str]]] = []

            def enter(node_id: str) -> None:
                visited.add(node_id)
                path.append(node_id)
                on_path.add(node_id)
                stack.append((node_id, iter(self.tasks[node_id].blockers())))

            enter(start)
            while stack:
                node_id, blockers = stack[-1]
                for blocker in blockers:
                    if blocker in on_path:
                        cycles.append(path[path.index(blocker) :] + [blocker])
                    elif blocker not in visited and blocker in self.tasks:
                        enter(blocker)
                        break
                else:
                    stack.pop()
                    path.pop()
                    on_path.discard(node_id)

        return cycles

    def find_roots(self) -> list[str]:
        """Sorted ids of tasks with no blockers."""
        return sorted(task_id for task_id, node in self.tasks.items() if not node.blockers())

    def blockers_resolved(self, task: TaskNode) -> bool:
        """True iff every blocker is Done or Cancelled.

        A blocker id missing from the graph keeps the task blocked.
        """
        for blocker_id in task.blockers():
            blocker = self.tasks.get(blocker_id)
            if blocker is None or not blocker.resolved:
                return False
        return True

    def remaining_blockers(self, task: TaskNode) -> list[str]:
        return [
            blocker_id
            for blocker_id in task.blockers()
            if blocker_id not in self.tasks or not self.tasks[blocker_id].resolved
        ]

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _path_tuple(self, task_id: str, memo: dict[str, tuple[str, ...]]) -> tuple[str, ...]:
        """Longest dependents chain from `task_id`, as a node tuple.

        Iterative post-order walk; `memo` is shared across one query so shared
        sub-graphs are solved once. Edges back onto the current walk are
        skipped, so cyclic input terminates.
        """
        on_stack: set[str] = set()
        stack: list[tuple[str, bool]] = [(task_id, False)]

        while stack:
            node_id, expanded = stack.pop()
            if node_id in memo:
                continue
            if expanded:
                on_stack.discard(node_id)
                best: tuple[str, ...] = ()
                for child in self.dependents_of(node_id):
                    sub = memo.get(child)
                    if sub is not None and len(sub) > len(best):
                        best = sub
                memo[node_id] = (node_id, *best)
                continue

            on_stack.add(node_id)
            stack.append((node_id, True))
            for child in reversed(self.dependents_of(node_id)):
                if child not in memo and child not in on_stack:
                    stack.append((child, False))

        return memo[task_id]

    def longest_path(self, task_id: str) -> CriticalPath:
        """Longest downstream chain over dependents, a proxy for urgency."""
        path = self._path_tuple(task_id, {})
        return CriticalPath(length=len(path) - 1, path=list(path))

    def _closure(self, task_id: str) -> set[str]:
        seen: set[str] = set()
        frontier = list(self.dependents_of(task_id))
        while frontier:
            current = frontier.pop()
            if current in seen or current == task_id:
                continue
            seen.add(current)
            frontier.extend(self.dependents_of(current))
        return seen

    def count_total_unblocked(self, task_id: str) -> int:
        """Size of the transitive-dependents closure, each task counted once."""
        return len(self._closure(task_id))

    def descendants(self, task_id: str, max_depth: int | None = None) -> list[str]:
        """Tasks that (transitively) wait on `task_id`, breadth-first."""
        return self._walk(task_id, self.dependents_of, max_depth)

    def ancestors(self, task_id: str, max_depth: int | None = None) -> list[str]:
        """Tasks `task_id` (transitively) waits on, breadth-first.

        Blocker ids missing from the graph are listed but not expanded.
        """

        def blockers_of(node_id: str) -> list[str]:
            node = self.tasks.get(node_id)
            return node.blockers() if node else []

        return self._walk(task_id, blockers_of, max_depth)

    @staticmethod
    def _walk(task_id: str, edges: Callable[[str], list[str]], max_depth: int | None) -> list[str]:
        found: dict[str, None] = {}
        level = [task_id]
        depth = 0
        while level and (max_depth is None or depth < max_depth):
            depth += 1
            next_level: list[str] = []
            for node_id in level:
                for neighbour in edges(node_id):
                    if neighbour != task_id and neighbour not in found:
                        found[neighbour] = None
                        next_level.append(neighbour)
            level = next_level
        return list(found)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def ready_tasks(
        self,
        *,
        prd: str | None = None,
        epic: str | None = None,
        limit: int | None = None,
        include_started: bool = False,
    ) -> list[RankedTask]:
        """Tasks whose blockers are all resolved, best unblocking leverage first.

        Only Not Started tasks are candidates (plus In Progress ones when
        `include_started`). Sorted by total unblocked desc, critical path desc,
        then id.
        """
        statuses = {TaskStatus.NOT_STARTED}
        if include_started:
            statuses.add(TaskStatus.IN_PROGRESS)

        memo: dict[str, tuple[str, ...]] = {}
        ranked: list[RankedTask] = []
        for node in self.tasks.values():
            if node.status not in statuses:
                continue
            if prd is not None and node.prd_id != prd:
                continue
            if epic is not None and node.epic_id != epic:
                continue
            if not self.blockers_resolved(node):
                continue
            ranked.append(
                RankedTask(
                    task=node,
                    total_unblocked=self.count_total_unblocked(node.id),
                    critical_path_length=len(self._path_tuple(node.id, memo)) - 1,
                )
            )

        ranked.sort(key=lambda r: (-r.total_unblocked, -r.critical_path_length, r.task.id))
        return ranked[:limit] if limit is not None else ranked

    def impact(self, task_id: str) -> ImpactReport:
        """What completing `task_id` would unblock.

        A dependent is a direct unblock when every blocker other than
        `task_id` is already resolved; otherwise it is still blocked and the
        remaining blockers are listed.
        """
        self.get(task_id)

        direct: list[str] = []
        still_blocked: list[StillBlocked] = []
        for dependent_id in self.dependents_of(task_id):
            dependent = self.tasks.get(dependent_id)
            if dependent is None:
                continue
            waiting_on = [b for b in self.remaining_blockers(dependent) if b != task_id]
            if waiting_on:
                still_blocked.append(StillBlocked(id=dependent_id, waiting_on=waiting_on))
            else:
                direct.append(dependent_id)

        critical = self.longest_path(task_id)
        return ImpactReport(
            task_id=task_id,
            direct_unblocks=direct,
            still_blocked=still_blocked,
            total_unblocked=self.count_total_unblocked(task_id),
            critical_path_length=critical.length,
            critical_path=critical.path,
        )

    def critical_tasks(self, *, prd: str | None = None, limit: int | None = 5) -> list[Bottleneck]:
        """Open tasks blocking the most work.

        Score is direct dependents times critical path length; tasks with no
        dependents score zero and are left out.
        """
        memo: dict[str, tuple[str, ...]] = {}
        scored: list[Bottleneck] = []
        for node in self.tasks.values():
            if not node.is_open:
                continue
            if prd is not None and node.prd_id != prd:
                continue
            dependents = len(self.dependents_of(node.id))
            if dependents == 0:
                continue
            path_length = len(self._path_tuple(node.id, memo)) - 1
            scored.append(
                Bottleneck(
                    task=node,
                    dependents=dependents,
                    critical_path_length=path_length,
                    score=dependents * path_length,
                )
            )

        scored.sort(key=lambda b: (-b.score, b.task.id))
        return scored[:limit] if limit is not None else scored


__all__ = [
    "Bottleneck",
    "CriticalPath",
    "DependencyGraph",
    "ImpactReport",
    "RankedTask",
    "StillBlocked",
    "TaskNode",
    "TaskStatus",
    "UnknownTaskError",
    "blocker_id",
]
