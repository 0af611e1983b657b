"""Artifact boundary: task snapshots and the agent registry.

Raw records are read here and converted once into typed values. Nothing past
this module inspects untyped task maps.

Task snapshot (YAML or JSON):

    tasks:
      - id: T002
        title: Wire the API
        status: In Progress
        blocked_by: ["T001 - schema"]
        parent: PRD-001/E001
    epics:
      - {id: E001, prd: PRD-001, status: In Progress}
    prds:
      - {id: PRD-001, status: In Progress}

A bare list is accepted as the `tasks` section. `parent` may name an epic
(`E001`) or a PRD and epic (`PRD-001/E001`); explicit `epic`/`prd` keys win.

Agent registry (JSON): `{"agents": [record, ...]}` or a bare list, one record
per task with at least `task_id` and `status`. The `worktree` value is kept
opaque and handed to the worktree layer untouched.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from shipyard.core.dag import DependencyGraph, TaskNode, TaskStatus, blocker_id
from shipyard.core.result import ArtifactError
from shipyard.core.validation import EPIC_FIX_ACTIONS, Fix

logger = logging.getLogger(__name__)

ACTIVE_AGENT_STATUSES = frozenset({"dispatched", "running"})
# Agents whose work is settled; nothing reconciles or merges them again.
RETIRED_AGENT_STATUSES = frozenset({"merged", "rejected", "missing"})


# -----------------------------------------------------------------------------
# Task snapshot
# -----------------------------------------------------------------------------


class EntityRecord(BaseModel):
    """An epic or PRD as far as shipyard cares: id, parent PRD and status."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: TaskStatus | None = None
    prd_id: str | None = None
    blocked_by: tuple[str, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.status is None or not self.status.resolved

    def as_node(self) -> TaskNode:
        """The epic as a graph node, so epic dependencies reuse the task graph."""
        return TaskNode(
            id=self.id,
            status=self.status,
            raw_status=self.status.value if self.status else "",
            blocked_by=self.blocked_by,
            raw_blocked_by=self.blocked_by,
            prd_id=self.prd_id,
        )


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _split_parent(parent: str | None) -> tuple[str | None, str | None]:
    """Return (prd_id, epic_id) from a parent reference."""
    if not parent:
        return None, None
    if "/" in parent:
        prd, _, epic = parent.partition("/")
        return prd.strip() or None, epic.strip() or None
    return None, parent


def task_from_record(record: Mapping[str, Any], source: str | None = None) -> TaskNode:
    """Convert one raw task record into a TaskNode.

    Raises:
        ArtifactError: When the record has no id or an unusable blocked_by value
    """
    task_id = _as_str(record.get("id"))
    if task_id is None:
        raise ArtifactError("Task record has no id", context={"source": source, "record": dict(record)})

    raw_blockers = record.get("blocked_by") or []
    if isinstance(raw_blockers, str):
        raw_blockers = [raw_blockers]
    if not isinstance(raw_blockers, list):
        raise ArtifactError(
            f"{task_id}: blocked_by must be a list",
            context={"source": source, "blocked_by": raw_blockers},
        )
    raw_entries = tuple(str(entry) for entry in raw_blockers if str(entry).strip())
    blocked_by = tuple(b for b in (blocker_id(entry) for entry in raw_entries) if b)

    raw_status = _as_str(record.get("status")) or ""
    parent_prd, parent_epic = _split_parent(_as_str(record.get("parent")))

    return TaskNode(
        id=task_id,
        status=TaskStatus.normalize(raw_status),
        raw_status=raw_status,
        blocked_by=blocked_by,
        raw_blocked_by=raw_entries,
        epic_id=_as_str(record.get("epic") or record.get("epic_id")) or parent_epic,
        prd_id=_as_str(record.get("prd") or record.get("prd_id")) or parent_prd,
        title=_as_str(record.get("title")) or "",
        source=_as_str(record.get("file") or record.get("source")) or source,
    )


def _entity_from_record(record: Mapping[str, Any], section: str) -> EntityRecord:
    entity_id = _as_str(record.get("id"))
    if entity_id is None:
        raise ArtifactError(f"{section} record has no id", context={"record": dict(record)})
    raw_blockers = record.get("blocked_by") or []
    if isinstance(raw_blockers, str):
        raw_blockers = [raw_blockers]
    if not isinstance(raw_blockers, list):
        raise ArtifactError(f"{entity_id}: blocked_by must be a list", context={"blocked_by": raw_blockers})
    return EntityRecord(
        id=entity_id,
        status=TaskStatus.normalize(_as_str(record.get("status"))),
        prd_id=_as_str(record.get("prd") or record.get("prd_id") or record.get("parent")),
        blocked_by=tuple(b for b in (blocker_id(str(entry)) for entry in raw_blockers) if b),
    )


@dataclass
class TaskSnapshot:
    """One read of the task store, raw records kept for fix write-back."""

    path: Path
    records: list[dict[str, Any]]
    tasks: list[TaskNode]
    epics: dict[str, EntityRecord] = field(default_factory=dict)
    prds: dict[str, EntityRecord] = field(default_factory=dict)
    document: dict[str, Any] | None = None
    epic_records: list[dict[str, Any]] = field(default_factory=list)

    def graph(self) -> DependencyGraph:
        return DependencyGraph.build(self.tasks)

    def epic_graph(self) -> DependencyGraph:
        return DependencyGraph.build(epic.as_node() for epic in self.epics.values())

    def known_ids(self) -> set[str]:
        """Every task, epic and PRD id the snapshot mentions."""
        ids = {task.id for task in self.tasks}
        ids.update(self.epics)
        ids.update(self.prds)
        for task in self.tasks:
            ids.update(i for i in (task.epic_id, task.prd_id) if i)
        for epic in self.epics.values():
            if epic.prd_id:
                ids.add(epic.prd_id)
        return ids

    def epic_prd(self, epic_id: str) -> str | None:
        epic = self.epics.get(epic_id)
        if epic and epic.prd_id:
            return epic.prd_id
        for task in self.tasks:
            if task.epic_id == epic_id and task.prd_id:
                return task.prd_id
        return None


def _parse_document(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ArtifactError(
            f"Cannot read task snapshot {path}",
            context={"error": str(exc)},
            remedy="Set paths.tasks_file or SHIPYARD_PATHS__TASKS_FILE",
        ) from exc

    try:
        if path.suffix.lower() == ".json":
            return json.loads(raw)
        return yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ArtifactError(f"Syntax error in {path}: {exc}") from exc


def _section(document: Mapping[str, Any], name: str) -> list[Mapping[str, Any]]:
    value = document.get(name) or []
    if not isinstance(value, list) or not all(isinstance(item, Mapping) for item in value):
        raise ArtifactError(f"'{name}' must be a list of mappings")
    return value


def load_snapshot(path: Path) -> TaskSnapshot:
    """Read a task snapshot file and build typed records.

    Raises:
        ArtifactError: Missing file, bad syntax or malformed records
    """
    if not path.exists():
        raise ArtifactError(
            f"Task snapshot not found: {path}",
            remedy="Export tasks to tasks.yaml or set SHIPYARD_PATHS__TASKS_FILE",
        )

    document = _parse_document(path)
    if document is None:
        document = {"tasks": []}

    if isinstance(document, list):
        records = document
        container: dict[str, Any] | None = None
        epic_records: list[Mapping[str, Any]] = []
        prd_records: list[Mapping[str, Any]] = []
    elif isinstance(document, dict):
        records = _section(document, "tasks")  # type: ignore[assignment]
        container = document
        epic_records = _section(document, "epics")
        prd_records = _section(document, "prds")
    else:
        raise ArtifactError(f"Task snapshot root in {path} must be a mapping or a list")

    if not all(isinstance(item, dict) for item in records):
        raise ArtifactError(f"Task records in {path} must be mappings")

    try:
        tasks = [task_from_record(record, source=None) for record in records]
        epics = {e.id: e for e in (_entity_from_record(r, "epic") for r in epic_records)}
        prds = {p.id: p for p in (_entity_from_record(r, "prd") for r in prd_records)}
    except ValidationError as exc:
        raise ArtifactError(f"Invalid record in {path}", context={"error": str(exc)}) from exc

    logger.debug("Loaded %d tasks, %d epics, %d prds from %s", len(tasks), len(epics), len(prds), path)
    return TaskSnapshot(
        path=path,
        records=records,
        tasks=tasks,
        epics=epics,
        prds=prds,
        document=container,
        epic_records=[r for r in epic_records if isinstance(r, dict)],
    )


def apply_fixes(snapshot: TaskSnapshot, fixes: Iterable[Fix]) -> int:
    """Apply safe fixes to the snapshot's raw records in place.

    Returns:
        Number of record fields that changed
    """
    by_id = {str(record.get("id", "")).strip(): record for record in snapshot.records}
    epic_by_id = {str(record.get("id", "")).strip(): record for record in snapshot.epic_records}
    changed = 0

    for fix in fixes:
        record = (epic_by_id if fix.action in EPIC_FIX_ACTIONS else by_id).get(fix.task)
        if record is None:
            continue

        if fix.action == "normalize_status":
            if record.get("status") != fix.new:
                record["status"] = fix.new
                changed += 1
            continue

        entries = record.get("blocked_by") or []
        if isinstance(entries, str):
            entries = [entries]
        entries = [str(entry) for entry in entries]
        updated = _fix_blockers(entries, fix)
        if updated != entries:
            record["blocked_by"] = updated
            changed += 1

    return changed


def _fix_blockers(entries: list[str], fix: Fix) -> list[str]:
    if fix.action in (
        "remove_missing",
        "remove_self",
        "remove_cancelled",
        "remove_epic_blocker",
        "remove_epic_self_ref",
    ):
        return [entry for entry in entries if blocker_id(entry) != fix.blocker]
    if fix.action == "remove_duplicates":
        seen: set[str | None] = set()
        kept: list[str] = []
        for entry in entries:
            key = blocker_id(entry)
            if key in seen:
                continue
            seen.add(key)
            kept.append(entry)
        return kept
    if fix.action == "normalize_blocker":
        return [fix.new if entry == fix.old and fix.new else entry for entry in entries]
    return entries


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_snapshot(snapshot: TaskSnapshot) -> None:
    """Write the (fixed) raw records back in the file's own format."""
    document: Any = snapshot.document if snapshot.document is not None else snapshot.records
    if snapshot.path.suffix.lower() == ".json":
        text = json.dumps(document, indent=2) + "\n"
    else:
        text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
    _atomic_write(snapshot.path, text)
    logger.info("Wrote task snapshot %s", snapshot.path)


# -----------------------------------------------------------------------------
# Agent registry
# -----------------------------------------------------------------------------


class AgentRecord(BaseModel):
    """One agent/run registry entry.

    Unknown keys are preserved so a write-back never drops another tool's data.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    task_id: str = Field(validation_alias=AliasChoices("task_id", "taskId"))
    status: str = "pending"
    worktree: dict[str, Any] | None = None
    prd_id: str | None = Field(default=None, validation_alias=AliasChoices("prd_id", "prdId"))
    epic_id: str | None = Field(default=None, validation_alias=AliasChoices("epic_id", "epicId"))
    pr_url: str | None = Field(default=None, validation_alias=AliasChoices("pr_url", "prUrl"))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_AGENT_STATUSES


class AgentRegistry:
    """JSON-file agent registry, read whole and written whole."""

    def __init__(self, path: Path, records: list[AgentRecord] | None = None) -> None:
        self._path = path
        self._records: dict[str, AgentRecord] = {r.task_id: r for r in records or []}

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    def load(cls, path: Path) -> AgentRegistry:
        """Read the registry; a missing file is an empty registry."""
        if not path.exists():
            return cls(path)

        try:
            document = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise ArtifactError(f"Cannot read agent registry {path}: {exc}") from exc

        items = document.get("agents", []) if isinstance(document, dict) else document
        if not isinstance(items, list):
            raise ArtifactError(f"Agent registry {path} must hold a list of records")

        try:
            records = [AgentRecord.model_validate(item) for item in items]
        except ValidationError as exc:
            raise ArtifactError(f"Invalid agent record in {path}", context={"error": str(exc)}) from exc
        return cls(path, records)

    def __iter__(self) -> Iterator[AgentRecord]:
        return iter(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def get(self, task_id: str) -> AgentRecord | None:
        return self._records.get(task_id)

    def upsert(self, record: AgentRecord) -> None:
        self._records[record.task_id] = record

    def active(self) -> list[AgentRecord]:
        return [r for r in self._records.values() if r.is_active]

    def pending_merges(self) -> list[AgentRecord]:
        """Completed agents whose worktree has not been cleaned up yet."""
        return [
            r
            for r in self._records.values()
            if r.status == "completed" and r.worktree and not r.worktree.get("cleaned_at")
        ]

    def record_merge(self, task_id: str, metadata: Mapping[str, Any]) -> None:
        """Append merge metadata to a record's worktree value."""
        record = self._records.get(task_id)
        if record is None:
            return
        worktree = dict(record.worktree or {})
        worktree.update(metadata)
        self._records[task_id] = record.model_copy(update={"worktree": worktree})

    def mark_cleaned(self, task_id: str) -> None:
        self.record_merge(task_id, {"cleaned_at": datetime.now(timezone.utc).isoformat()})

    def mark_merged(self, task_id: str, metadata: Mapping[str, Any]) -> None:
        """Record a merge and retire the agent so it is no longer pending."""
        self.record_merge(task_id, metadata)
        self._set_status(task_id, "merged")

    def mark_missing(self, task_id: str) -> None:
        """Retire an agent whose checkout directory disappeared."""
        self.record_merge(task_id, {"missing_at": datetime.now(timezone.utc).isoformat()})
        self._set_status(task_id, "missing")

    def _set_status(self, task_id: str, status: str) -> None:
        record = self._records.get(task_id)
        if record is not None:
            self._records[task_id] = record.model_copy(update={"status": status})

    def save(self) -> None:
        payload = {"agents": [r.model_dump(exclude_none=True) for r in self._records.values()]}
        _atomic_write(self._path, json.dumps(payload, indent=2) + "\n")
        logger.debug("Saved %d agent records to %s", len(self._records), self._path)


__all__ = [
    "ACTIVE_AGENT_STATUSES",
    "AgentRecord",
    "AgentRegistry",
    "EntityRecord",
    "RETIRED_AGENT_STATUSES",
    "TaskSnapshot",
    "apply_fixes",
    "load_snapshot",
    "task_from_record",
    "write_snapshot",
]
