"""Tests for dependency graph validation and safe fixes."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from shipyard.core.artifacts import EntityRecord, TaskSnapshot, apply_fixes, task_from_record
from shipyard.core.dag import DependencyGraph
from shipyard.core.validation import validate


def graph_of(*records: dict[str, Any]) -> DependencyGraph:
    return DependencyGraph.build(task_from_record(r) for r in records)


def kinds(issues: list[Any]) -> list[str]:
    return [issue.kind for issue in issues]


def epics_of(*records: dict[str, Any]) -> DependencyGraph:
    return TaskSnapshot(
        path=Path("tasks.yaml"),
        records=[],
        tasks=[],
        epics={e.id: e for e in (EntityRecord(**r) for r in records)},
    ).epic_graph()


class TestErrors:
    def test_clean_graph(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Done"},
                {"id": "T2", "status": "Not Started", "blocked_by": ["T1"]},
                {"id": "T3", "status": "Not Started", "blocked_by": ["T2"]},
            )
        )
        assert report.ok
        assert report.errors == []
        assert report.fixes == []

    def test_missing_reference(self) -> None:
        report = validate(graph_of({"id": "T1", "status": "Not Started", "blocked_by": ["T9"]}))
        assert kinds(report.errors) == ["missing_ref"]
        assert report.errors[0].message == "T1: blocked_by references non-existent task T9"
        assert [(f.action, f.blocker) for f in report.fixes] == [("remove_missing", "T9")]

    def test_self_reference(self) -> None:
        report = validate(graph_of({"id": "T1", "status": "Not Started", "blocked_by": ["T1"]}))
        assert kinds(report.errors) == ["self_ref"]
        assert report.fixes[0].action == "remove_self"
        # A self-only blocker list is not an orphan.
        assert "orphan" not in kinds(report.warnings)

    def test_cycle(self) -> None:
        report = validate(
            graph_of(
                {"id": "A", "status": "Not Started", "blocked_by": ["B"]},
                {"id": "B", "status": "Not Started", "blocked_by": ["A"]},
            )
        )
        cycles = [issue for issue in report.errors if issue.kind == "cycle"]
        assert [c.path for c in cycles] == [["A", "B", "A"]]
        assert cycles[0].message == "Cycle detected: A -> B -> A"

    def test_invalid_status(self) -> None:
        report = validate(graph_of({"id": "T1", "status": "bogus"}))
        assert kinds(report.errors) == ["invalid_status"]
        assert '"bogus"' in report.errors[0].message

    def test_id_mismatch_with_source_file(self) -> None:
        report = validate(graph_of({"id": "T001", "status": "Done", "file": "tasks/T005-schema.md"}))
        assert kinds(report.errors) == ["id_mismatch"]


class TestWarnings:
    def test_duplicate_blockers(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Done"},
                {"id": "T2", "status": "Not Started", "blocked_by": ["T1", "T1"]},
            )
        )
        assert "duplicate" in kinds(report.warnings)
        assert any(f.action == "remove_duplicates" for f in report.fixes)

    def test_descriptive_blocker_entry(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Done"},
                {"id": "T2", "status": "Not Started", "blocked_by": ["T1 - setup db"]},
            )
        )
        formats = [issue for issue in report.warnings if issue.kind == "format"]
        assert len(formats) == 1
        fix = next(f for f in report.fixes if f.action == "normalize_blocker")
        assert (fix.old, fix.new) == ("T1 - setup db", "T1")

    def test_cancelled_blocker(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Cancelled"},
                {"id": "T2", "status": "Not Started", "blocked_by": ["T1"]},
            )
        )
        assert "cancelled_blocker" in kinds(report.warnings)
        assert report.ok

    def test_status_alias(self) -> None:
        report = validate(graph_of({"id": "T1", "status": "wip"}))
        assert kinds(report.warnings) == ["status_format"]
        fix = report.fixes[0]
        assert (fix.action, fix.old, fix.new) == ("normalize_status", "wip", "In Progress")

    def test_orphan_leaf(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Not Started"},
                {"id": "T2", "status": "Not Started", "blocked_by": ["T1"]},
            )
        )
        orphans = [issue.task for issue in report.warnings if issue.kind == "orphan"]
        assert orphans == ["T2"]

    def test_done_leaf_is_not_orphan(self) -> None:
        report = validate(
            graph_of(
                {"id": "T1", "status": "Done"},
                {"id": "T2", "status": "Done", "blocked_by": ["T1"]},
            )
        )
        assert "orphan" not in kinds(report.warnings)


class TestScope:
    def test_prd_scope_skips_other_tasks(self) -> None:
        graph = graph_of(
            {"id": "T1", "status": "Not Started", "prd": "P1", "blocked_by": ["MISSING"]},
            {"id": "T2", "status": "Not Started", "prd": "P2"},
        )
        assert validate(graph, prd="P2").ok
        assert not validate(graph, prd="P1").ok


class TestEpics:
    def test_epic_blockers_checked_against_epics(self) -> None:
        tasks = graph_of({"id": "T1", "status": "Done", "epic": "E1"})
        epics = epics_of(
            {"id": "E1", "prd_id": "P1", "blocked_by": ("E1", "E9")},
            {"id": "E2", "prd_id": "P1"},
        )

        report = validate(tasks, epics=epics)

        assert kinds(report.errors) == ["epic_self_ref", "epic_missing_ref"]
        assert report.errors[0].message == "E1: blocked_by contains self-reference"
        assert report.errors[1].message == "E1: blocked_by references non-existent epic E9"
        assert [(f.task, f.action, f.blocker) for f in report.fixes] == [
            ("E1", "remove_epic_self_ref", "E1"),
            ("E1", "remove_epic_blocker", "E9"),
        ]

    def test_epic_cycle(self) -> None:
        tasks = graph_of({"id": "T1", "status": "Done", "epic": "E1"})
        epics = epics_of({"id": "E1", "blocked_by": ("E2",)}, {"id": "E2", "blocked_by": ("E1",)})

        report = validate(tasks, epics=epics)

        cycles = [issue for issue in report.errors if issue.kind == "epic_cycle"]
        assert [c.path for c in cycles] == [["E1", "E2", "E1"]]
        assert cycles[0].message == "Epic cycle detected: E1 -> E2 -> E1"
        # Cycles have no safe automatic fix.
        assert report.fixes == []

    def test_task_without_known_epic(self) -> None:
        tasks = graph_of(
            {"id": "T1", "status": "Done", "prd": "P1"},
            {"id": "T2", "status": "Done", "epic": "E7"},
            {"id": "T3", "status": "Done", "parent": "P1/E1"},
        )

        report = validate(tasks, epics=epics_of({"id": "E1", "prd_id": "P1"}))

        assert kinds(report.errors) == ["missing_epic", "missing_epic"]
        assert report.errors[0].message == "T1: Task has no epic parent (parent: P1)"
        assert report.errors[1].message == "T2: parent epic E7 does not exist"

    def test_no_epics_declared_skips_epic_checks(self) -> None:
        tasks = graph_of({"id": "T1", "status": "Done"})
        assert validate(tasks, epics=epics_of()).ok
        assert validate(tasks).ok

    def test_prd_scope_applies_to_epics(self) -> None:
        tasks = graph_of({"id": "T1", "status": "Done", "prd": "P2", "epic": "E2"})
        epics = epics_of({"id": "E1", "prd_id": "P1", "blocked_by": ("E9",)}, {"id": "E2", "prd_id": "P2"})

        assert validate(tasks, prd="P2", epics=epics).ok
        assert kinds(validate(tasks, prd="P1", epics=epics).errors) == ["epic_missing_ref"]


class TestApplyFixes:
    def test_fixes_rewrite_raw_records(self) -> None:
        records: list[dict[str, Any]] = [
            {"id": "T1", "status": "Done"},
            {"id": "T2", "status": "wip", "blocked_by": ["T1 - setup", "T1", "T9", "T2"]},
        ]
        snapshot = TaskSnapshot(
            path=Path("tasks.yaml"),
            records=records,
            tasks=[task_from_record(r) for r in records],
        )
        report = validate(snapshot.graph())

        changed = apply_fixes(snapshot, report.fixes)

        assert changed > 0
        assert records[1]["status"] == "In Progress"
        assert records[1]["blocked_by"] == ["T1"]
