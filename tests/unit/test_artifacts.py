"""Tests for the artifact boundary: task snapshots and the agent registry."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from shipyard.core.artifacts import (
    AgentRecord,
    AgentRegistry,
    apply_fixes,
    load_snapshot,
    task_from_record,
    write_snapshot,
)
from shipyard.core.dag import TaskStatus
from shipyard.core.result import ArtifactError
from shipyard.core.validation import validate

SNAPSHOT = """\
tasks:
  - id: T001
    title: Schema
    status: Done
    parent: PRD-001/E001
  - id: T002
    title: Wire the API
    status: in progress
    blocked_by: ["T001 - schema"]
    parent: E001
    prd: PRD-001
epics:
  - {id: E001, prd: PRD-001, status: In Progress}
prds:
  - {id: PRD-001, status: In Progress}
"""


@pytest.fixture
def snapshot_file(tmp_path: Path) -> Path:
    path = tmp_path / "tasks.yaml"
    path.write_text(SNAPSHOT)
    return path


class TestTaskFromRecord:
    def test_parent_reference(self) -> None:
        task = task_from_record({"id": "T1", "status": "Done", "parent": "PRD-9/E3"})
        assert (task.prd_id, task.epic_id) == ("PRD-9", "E3")

    def test_explicit_keys_win_over_parent(self) -> None:
        task = task_from_record({"id": "T1", "status": "Done", "parent": "P/E", "epic": "E7"})
        assert task.epic_id == "E7"
        assert task.prd_id == "P"

    def test_string_blocked_by(self) -> None:
        task = task_from_record({"id": "T2", "status": "Done", "blocked_by": "T1 - setup"})
        assert task.blocked_by == ("T1",)
        assert task.raw_blocked_by == ("T1 - setup",)

    def test_missing_id(self) -> None:
        with pytest.raises(ArtifactError):
            task_from_record({"status": "Done"})

    def test_bad_blocked_by(self) -> None:
        with pytest.raises(ArtifactError):
            task_from_record({"id": "T1", "blocked_by": {"T0": True}})


class TestLoadSnapshot:
    def test_yaml_sections(self, snapshot_file: Path) -> None:
        snapshot = load_snapshot(snapshot_file)

        assert [t.id for t in snapshot.tasks] == ["T001", "T002"]
        t2 = snapshot.tasks[1]
        assert t2.status is TaskStatus.IN_PROGRESS
        assert t2.raw_status == "in progress"
        assert t2.blocked_by == ("T001",)
        assert (t2.prd_id, t2.epic_id) == ("PRD-001", "E001")
        assert snapshot.epics["E001"].prd_id == "PRD-001"
        assert "PRD-001" in snapshot.prds
        assert snapshot.epic_prd("E001") == "PRD-001"
        assert {"T001", "T002", "E001", "PRD-001"} <= snapshot.known_ids()

    def test_json_bare_list(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"id": "T1", "status": "Done"}, {"id": "T2", "status": "todo"}]))

        snapshot = load_snapshot(path)

        assert [t.id for t in snapshot.tasks] == ["T1", "T2"]
        assert snapshot.document is None
        assert snapshot.epics == {}

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text("")
        assert load_snapshot(path).tasks == []

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ArtifactError) as excinfo:
            load_snapshot(tmp_path / "nope.yaml")
        assert excinfo.value.remedy

    def test_syntax_error(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text("{not json")
        with pytest.raises(ArtifactError):
            load_snapshot(path)

    def test_tasks_section_must_be_list(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text("tasks: {id: T1}\n")
        with pytest.raises(ArtifactError):
            load_snapshot(path)


class TestWriteSnapshot:
    def test_fix_and_write_back_keeps_sections(self, snapshot_file: Path) -> None:
        snapshot = load_snapshot(snapshot_file)
        report = validate(snapshot.graph())
        assert apply_fixes(snapshot, report.fixes) == 2

        write_snapshot(snapshot)

        document = yaml.safe_load(snapshot_file.read_text())
        assert document["tasks"][1]["blocked_by"] == ["T001"]
        assert document["tasks"][1]["status"] == "In Progress"
        assert document["epics"][0]["id"] == "E001"
        assert validate(load_snapshot(snapshot_file).graph()).fixes == []

    def test_epic_fixes_edit_epic_records(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text(
            "tasks:\n"
            "  - {id: T1, status: Done, parent: PRD-1/E1}\n"
            "epics:\n"
            "  - {id: E1, prd: PRD-1, status: Done, blocked_by: [E1, E9, E2]}\n"
            "  - {id: E2, prd: PRD-1, status: Done}\n"
        )
        snapshot = load_snapshot(path)
        assert snapshot.epics["E1"].blocked_by == ("E1", "E9", "E2")

        report = validate(snapshot.graph(), epics=snapshot.epic_graph())
        assert {issue.kind for issue in report.errors} == {"epic_self_ref", "epic_missing_ref"}
        assert apply_fixes(snapshot, report.fixes) == 2

        write_snapshot(snapshot)

        reloaded = load_snapshot(path)
        assert reloaded.epics["E1"].blocked_by == ("E2",)
        assert [t.id for t in reloaded.tasks] == ["T1"]
        assert validate(reloaded.graph(), epics=reloaded.epic_graph()).ok


class TestAgentRegistry:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        registry = AgentRegistry.load(tmp_path / "agents.json")
        assert len(registry) == 0
        assert registry.active() == []

    def test_load_wrapped_and_camel_case(self, tmp_path: Path) -> None:
        path = tmp_path / "agents.json"
        path.write_text(
            json.dumps(
                {
                    "agents": [
                        {"taskId": "T1", "status": "running", "prdId": "P1", "model": "x"},
                        {"task_id": "T2", "status": "completed", "worktree": {"path": "/w/T2"}},
                        {
                            "task_id": "T3",
                            "status": "completed",
                            "worktree": {"path": "/w/T3", "cleaned_at": "2026-01-01T00:00:00+00:00"},
                        },
                    ]
                }
            )
        )

        registry = AgentRegistry.load(path)

        assert [r.task_id for r in registry.active()] == ["T1"]
        assert registry.get("T1").prd_id == "P1"  # type: ignore[union-attr]
        assert [r.task_id for r in registry.pending_merges()] == ["T2"]

    def test_save_preserves_unknown_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "agents.json"
        registry = AgentRegistry(path, [AgentRecord.model_validate({"task_id": "T1", "model": "big"})])

        registry.save()

        saved = json.loads(path.read_text())
        assert saved["agents"][0]["model"] == "big"
        assert AgentRegistry.load(path).get("T1") is not None

    def test_record_merge_and_mark_cleaned(self, tmp_path: Path) -> None:
        registry = AgentRegistry(
            tmp_path / "agents.json",
            [AgentRecord(task_id="T1", status="completed", worktree={"path": "/w/T1"})],
        )

        registry.record_merge("T1", {"merged_to": "main"})
        assert [r.task_id for r in registry.pending_merges()] == ["T1"]
        registry.mark_cleaned("T1")

        worktree = registry.get("T1").worktree  # type: ignore[union-attr]
        assert worktree["merged_to"] == "main"
        assert worktree["path"] == "/w/T1"
        assert worktree["cleaned_at"]
        assert registry.pending_merges() == []

    def test_invalid_document(self, tmp_path: Path) -> None:
        path = tmp_path / "agents.json"
        path.write_text('{"agents": {"T1": {}}}')
        with pytest.raises(ArtifactError):
            AgentRegistry.load(path)
