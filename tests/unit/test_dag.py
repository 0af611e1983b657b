"""Tests for the task dependency graph."""

from __future__ import annotations

import logging

import pytest

from shipyard.core.dag import (
    DependencyGraph,
    TaskNode,
    TaskStatus,
    UnknownTaskError,
    blocker_id,
)


def node(task_id: str, status: str = "Not Started", *blocked_by: str, prd: str | None = None) -> TaskNode:
    return TaskNode(
        id=task_id,
        status=TaskStatus.normalize(status),
        raw_status=status,
        blocked_by=blocked_by,
        raw_blocked_by=blocked_by,
        prd_id=prd,
    )


@pytest.fixture
def diamond() -> DependencyGraph:
    """A done; B and C wait on A; D waits on B and C; E waits on D."""
    return DependencyGraph.build(
        [
            node("A", "Done"),
            node("B", "Not Started", "A"),
            node("C", "Not Started", "A"),
            node("D", "Not Started", "B", "C"),
            node("E", "Not Started", "D"),
        ]
    )


class TestTaskStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Not Started", TaskStatus.NOT_STARTED),
            ("todo", TaskStatus.NOT_STARTED),
            ("in-progress", TaskStatus.IN_PROGRESS),
            ("IN_PROGRESS", TaskStatus.IN_PROGRESS),
            ("WIP", TaskStatus.IN_PROGRESS),
            ("Complete", TaskStatus.DONE),
            ("canceled", TaskStatus.CANCELLED),
            ("Blocked", TaskStatus.BLOCKED),
        ],
    )
    def test_normalize_aliases(self, raw: str, expected: TaskStatus) -> None:
        assert TaskStatus.normalize(raw) is expected

    def test_normalize_unknown(self) -> None:
        assert TaskStatus.normalize("bogus") is None
        assert TaskStatus.normalize(None) is None
        assert TaskStatus.normalize("") is None

    def test_resolved_statuses(self) -> None:
        assert TaskStatus.DONE.resolved
        assert TaskStatus.CANCELLED.resolved
        assert not TaskStatus.BLOCKED.resolved


class TestBlockerId:
    def test_strips_description(self) -> None:
        assert blocker_id("T001 - schema") == "T001"
        assert blocker_id("T002: wire the API") == "T002"

    def test_plain_id(self) -> None:
        assert blocker_id("T003") == "T003"

    def test_blank_entry(self) -> None:
        assert blocker_id("   ") is None


class TestTaskNode:
    def test_blockers_dedupes_and_drops_self(self) -> None:
        task = node("T1", "Not Started", "T0", "T1", "T0", "T2")
        assert task.blockers() == ["T0", "T2"]

    def test_unknown_status_is_open(self) -> None:
        task = node("T1", "whatever")
        assert task.status is None
        assert task.is_open


class TestStructure:
    def test_dependents_index(self, diamond: DependencyGraph) -> None:
        assert diamond.dependents_of("A") == ["B", "C"]
        assert diamond.dependents_of("D") == ["E"]
        assert diamond.dependents_of("E") == []

    def test_duplicate_blockers_counted_once(self) -> None:
        graph = DependencyGraph.build([node("A"), node("B", "Not Started", "A", "A")])
        assert graph.dependents_of("A") == ["B"]

    def test_duplicate_id_logs_and_keeps_last(
        self, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # CLI runs earlier in the session may have detached the package logger.
        monkeypatch.setattr(logging.getLogger("shipyard"), "propagate", True)
        with caplog.at_level(logging.WARNING, logger="shipyard.core.dag"):
            graph = DependencyGraph.build([node("A", "Done"), node("A", "Not Started")])

        assert graph.tasks["A"].status is TaskStatus.NOT_STARTED
        assert "Duplicate task id A" in caplog.text

    def test_find_roots(self, diamond: DependencyGraph) -> None:
        assert diamond.find_roots() == ["A"]

    def test_get_unknown_task(self, diamond: DependencyGraph) -> None:
        with pytest.raises(UnknownTaskError):
            diamond.get("Z")

    def test_acyclic_graph_has_no_cycles(self, diamond: DependencyGraph) -> None:
        assert diamond.detect_cycles() == []

    def test_two_node_cycle(self) -> None:
        graph = DependencyGraph.build([node("A", "Not Started", "B"), node("B", "Not Started", "A")])
        assert graph.detect_cycles() == [["A", "B", "A"]]

    def test_disjoint_cycles_are_each_reported(self) -> None:
        graph = DependencyGraph.build(
            [
                node("A", "Not Started", "B"),
                node("B", "Not Started", "A"),
                node("C", "Not Started", "D"),
                node("D", "Not Started", "C"),
                node("E", "Not Started", "A"),
            ]
        )
        assert graph.detect_cycles() == [["A", "B", "A"], ["C", "D", "C"]]

    def test_self_reference_is_not_a_cycle(self) -> None:
        graph = DependencyGraph.build([node("A", "Not Started", "A")])
        assert graph.detect_cycles() == []

    def test_longest_path_terminates_on_cycles(self) -> None:
        graph = DependencyGraph.build([node("A", "Not Started", "B"), node("B", "Not Started", "A")])
        assert graph.longest_path("A").path == ["A", "B"]


class TestScoring:
    def test_longest_path_counts_edges(self, diamond: DependencyGraph) -> None:
        critical = diamond.longest_path("A")
        assert critical.length == 3
        assert critical.path == ["A", "B", "D", "E"]

    def test_leaf_path_is_zero(self, diamond: DependencyGraph) -> None:
        assert diamond.longest_path("E").length == 0

    def test_total_unblocked_counts_each_task_once(self, diamond: DependencyGraph) -> None:
        assert diamond.count_total_unblocked("A") == 4
        assert diamond.count_total_unblocked("B") == 2
        assert diamond.count_total_unblocked("E") == 0

    def test_descendants_and_ancestors(self, diamond: DependencyGraph) -> None:
        assert diamond.descendants("A") == ["B", "C", "D", "E"]
        assert diamond.descendants("A", max_depth=1) == ["B", "C"]
        assert diamond.ancestors("E") == ["D", "B", "C", "A"]

    def test_ancestors_list_missing_blockers(self) -> None:
        graph = DependencyGraph.build([node("A", "Not Started", "GONE")])
        assert graph.ancestors("A") == ["GONE"]


class TestReadiness:
    def test_ready_tasks_ranked(self, diamond: DependencyGraph) -> None:
        ready = diamond.ready_tasks()
        assert [r.task.id for r in ready] == ["B", "C"]
        assert ready[0].total_unblocked == 2
        assert ready[0].critical_path_length == 2

    def test_missing_blocker_keeps_task_blocked(self) -> None:
        graph = DependencyGraph.build([node("A", "Not Started", "GONE")])
        assert graph.ready_tasks() == []
        assert graph.remaining_blockers(graph.get("A")) == ["GONE"]

    def test_cancelled_blocker_is_resolved(self) -> None:
        graph = DependencyGraph.build([node("A", "Cancelled"), node("B", "Not Started", "A")])
        assert [r.task.id for r in graph.ready_tasks()] == ["B"]

    def test_started_tasks_only_on_request(self) -> None:
        graph = DependencyGraph.build([node("A", "In Progress"), node("B")])
        assert [r.task.id for r in graph.ready_tasks()] == ["B"]
        assert [r.task.id for r in graph.ready_tasks(include_started=True)] == ["A", "B"]

    def test_leverage_beats_id_order(self) -> None:
        graph = DependencyGraph.build(
            [node("A"), node("Z"), node("Y1", "Not Started", "Z"), node("Y2", "Not Started", "Z")]
        )
        assert [r.task.id for r in graph.ready_tasks()] == ["Z", "A"]

    def test_prd_filter_and_limit(self) -> None:
        graph = DependencyGraph.build([node("A", prd="P1"), node("B", prd="P2"), node("C", prd="P1")])
        assert [r.task.id for r in graph.ready_tasks(prd="P1")] == ["A", "C"]
        assert len(graph.ready_tasks(limit=1)) == 1


class TestImpact:
    def test_impact_of_done_root(self, diamond: DependencyGraph) -> None:
        report = diamond.impact("A")
        assert report.direct_unblocks == ["B", "C"]
        assert report.still_blocked == []
        assert report.total_unblocked == 4
        assert report.critical_path == ["A", "B", "D", "E"]

    def test_still_blocked_lists_other_blockers(self, diamond: DependencyGraph) -> None:
        report = diamond.impact("B")
        assert report.direct_unblocks == []
        assert [(s.id, s.waiting_on) for s in report.still_blocked] == [("D", ["C"])]

    def test_impact_unknown_task(self, diamond: DependencyGraph) -> None:
        with pytest.raises(UnknownTaskError):
            diamond.impact("Z")


class TestCriticalTasks:
    def test_scores_open_tasks_with_dependents(self, diamond: DependencyGraph) -> None:
        scored = diamond.critical_tasks()
        assert [(b.task.id, b.score) for b in scored] == [("B", 2), ("C", 2), ("D", 1)]

    def test_limit(self, diamond: DependencyGraph) -> None:
        assert len(diamond.critical_tasks(limit=1)) == 1
