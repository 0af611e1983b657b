"""Dependency graph validation.

Problems are reported as data: a ValidationReport holds error and warning
issues plus the safe fixes that `deps validate --fix` may apply. Nothing in
this module raises for a bad graph.

Error kinds: cycle, missing_ref, self_ref, invalid_status, id_mismatch,
epic_cycle, epic_missing_ref, epic_self_ref, missing_epic.
Warning kinds: duplicate, format, cancelled_blocker, status_format, orphan.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.dag import DependencyGraph, TaskNode, TaskStatus, blocker_id

IssueKind = Literal[
    "cycle",
    "missing_ref",
    "self_ref",
    "invalid_status",
    "id_mismatch",
    "duplicate",
    "format",
    "cancelled_blocker",
    "status_format",
    "orphan",
    "epic_cycle",
    "epic_missing_ref",
    "epic_self_ref",
    "missing_epic",
]
FixAction = Literal[
    "remove_missing",
    "remove_self",
    "remove_duplicates",
    "remove_cancelled",
    "normalize_blocker",
    "normalize_status",
    "remove_epic_blocker",
    "remove_epic_self_ref",
]

# Fixes that edit an epic record rather than a task record.
EPIC_FIX_ACTIONS = frozenset({"remove_epic_blocker", "remove_epic_self_ref"})

_FILE_ID = re.compile(r"^([A-Za-z]+-?\d+)")


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    message: str
    task: str | None = None
    epic: str | None = None
    blocker: str | None = None
    path: list[str] = Field(default_factory=list)


class Fix(BaseModel):
    """One safe correction to a raw task or epic record.

    Attributes:
        task: Id of the task (or, for EPIC_FIX_ACTIONS, the epic) to change
        action: What to change
        blocker: Blocker id removed by any remove_* action
        old: Previous value (raw blocker entry or raw status)
        new: Replacement value (normalized blocker id or canonical status)
    """

    model_config = ConfigDict(frozen=True)

    task: str
    action: FixAction
    blocker: str | None = None
    old: str | None = None
    new: str | None = None


class ValidationReport(BaseModel):
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    fixes: list[Fix] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _in_scope(node: TaskNode, prd: str | None) -> bool:
    return prd is None or node.prd_id == prd


def _check_blockers(node: TaskNode, graph: DependencyGraph, report: ValidationReport) -> None:
    for blocker in dict.fromkeys(node.blocked_by):
        if blocker == node.id:
            continue
        if blocker not in graph:
            report.errors.append(
                ValidationIssue(
                    kind="missing_ref",
                    task=node.id,
                    blocker=blocker,
                    message=f"{node.id}: blocked_by references non-existent task {blocker}",
                )
            )
            report.fixes.append(Fix(task=node.id, action="remove_missing", blocker=blocker))
        elif graph.tasks[blocker].status is TaskStatus.CANCELLED:
            report.warnings.append(
                ValidationIssue(
                    kind="cancelled_blocker",
                    task=node.id,
                    blocker=blocker,
                    message=f"{node.id}: blocked by cancelled task {blocker}",
                )
            )
            report.fixes.append(Fix(task=node.id, action="remove_cancelled", blocker=blocker))

    if node.id in node.blocked_by:
        report.errors.append(
            ValidationIssue(
                kind="self_ref",
                task=node.id,
                blocker=node.id,
                message=f"{node.id}: blocked_by contains self-reference",
            )
        )
        report.fixes.append(Fix(task=node.id, action="remove_self", blocker=node.id))

    seen: set[str] = set()
    duplicates: list[str] = []
    for blocker in node.blocked_by:
        if blocker in seen and blocker not in duplicates:
            duplicates.append(blocker)
        seen.add(blocker)
    if duplicates:
        report.warnings.append(
            ValidationIssue(
                kind="duplicate",
                task=node.id,
                message=f"{node.id}: blocked_by contains duplicates: {', '.join(duplicates)}",
            )
        )
        report.fixes.append(Fix(task=node.id, action="remove_duplicates"))

    for raw in node.raw_blocked_by:
        extracted = blocker_id(raw)
        if extracted and extracted != raw:
            report.warnings.append(
                ValidationIssue(
                    kind="format",
                    task=node.id,
                    blocker=extracted,
                    message=f'{node.id}: blocked_by "{raw}" should be "{extracted}"',
                )
            )
            report.fixes.append(Fix(task=node.id, action="normalize_blocker", old=raw, new=extracted))


def _check_status(node: TaskNode, report: ValidationReport) -> None:
    if node.status is None:
        valid = ", ".join(status.value for status in TaskStatus)
        report.errors.append(
            ValidationIssue(
                kind="invalid_status",
                task=node.id,
                message=f'{node.id}: Invalid status "{node.raw_status}". Valid: {valid}',
            )
        )
    elif node.raw_status and node.raw_status != node.status.value:
        report.warnings.append(
            ValidationIssue(
                kind="status_format",
                task=node.id,
                message=f'{node.id}: Status "{node.raw_status}" should be "{node.status.value}"',
            )
        )
        report.fixes.append(
            Fix(task=node.id, action="normalize_status", old=node.raw_status, new=node.status.value)
        )


def _check_source(node: TaskNode, report: ValidationReport) -> None:
    if not node.source:
        return
    match = _FILE_ID.match(Path(node.source).stem)
    if match and match.group(1) != node.id:
        report.errors.append(
            ValidationIssue(
                kind="id_mismatch",
                task=node.id,
                message=f'{node.id}: Record id doesn\'t match filename id "{match.group(1)}"',
            )
        )


def _check_epics(epics: DependencyGraph, prd: str | None, report: ValidationReport) -> None:
    for epic in epics.tasks.values():
        if not _in_scope(epic, prd):
            continue
        for blocker in dict.fromkeys(epic.blocked_by):
            if blocker == epic.id:
                report.errors.append(
                    ValidationIssue(
                        kind="epic_self_ref",
                        epic=epic.id,
                        blocker=epic.id,
                        message=f"{epic.id}: blocked_by contains self-reference",
                    )
                )
                report.fixes.append(Fix(task=epic.id, action="remove_epic_self_ref", blocker=epic.id))
            elif blocker not in epics:
                report.errors.append(
                    ValidationIssue(
                        kind="epic_missing_ref",
                        epic=epic.id,
                        blocker=blocker,
                        message=f"{epic.id}: blocked_by references non-existent epic {blocker}",
                    )
                )
                report.fixes.append(Fix(task=epic.id, action="remove_epic_blocker", blocker=blocker))

    for cycle in epics.detect_cycles():
        report.errors.append(
            ValidationIssue(
                kind="epic_cycle",
                path=cycle,
                message=f"Epic cycle detected: {' -> '.join(cycle)}",
            )
        )


def _check_parent_epic(node: TaskNode, epics: DependencyGraph, report: ValidationReport) -> None:
    if node.epic_id is None:
        message = f"{node.id}: Task has no epic parent (parent: {node.prd_id or 'none'})"
    elif node.epic_id not in epics:
        message = f"{node.id}: parent epic {node.epic_id} does not exist"
    else:
        return
    report.errors.append(
        ValidationIssue(kind="missing_epic", task=node.id, epic=node.epic_id, message=message)
    )


def validate(
    graph: DependencyGraph,
    prd: str | None = None,
    epics: DependencyGraph | None = None,
) -> ValidationReport:
    """Check a dependency graph and collect issues plus safe fixes.

    Args:
        graph: Graph built from the current task snapshot
        prd: Only report per-task issues for tasks of this PRD (cycles are
            always checked across the whole graph)
        epics: Epic dependency graph. Epic blockers are checked against it,
            and when it holds any epic every task must name one of them.

    Returns:
        ValidationReport; `report.ok` is False when any error was found
    """
    report = ValidationReport()
    if epics is not None and not len(epics):
        epics = None

    for node in graph.tasks.values():
        if not _in_scope(node, prd):
            continue
        _check_blockers(node, graph, report)
        _check_status(node, report)
        _check_source(node, report)
        if epics is not None:
            _check_parent_epic(node, epics, report)

    for cycle in graph.detect_cycles():
        report.errors.append(
            ValidationIssue(kind="cycle", path=cycle, message=f"Cycle detected: {' -> '.join(cycle)}")
        )

    if epics is not None:
        _check_epics(epics, prd, report)

    for node in graph.tasks.values():
        if not _in_scope(node, prd):
            continue
        if node.blockers() and not graph.dependents_of(node.id) and node.is_open:
            report.warnings.append(
                ValidationIssue(
                    kind="orphan",
                    task=node.id,
                    message=f"{node.id}: Leaf task with dependencies (orphan)",
                )
            )

    return report


__all__ = [
    "EPIC_FIX_ACTIONS",
    "Fix",
    "FixAction",
    "IssueKind",
    "ValidationIssue",
    "ValidationReport",
    "validate",
]
