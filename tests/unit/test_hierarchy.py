"""Tests for branch naming and parent resolution."""

from __future__ import annotations

import pytest

from shipyard.core.dag import TaskNode
from shipyard.worktree.hierarchy import (
    BranchContext,
    Branching,
    branch_for,
    context_for,
    hierarchy_chain,
    hierarchy_edges,
    parent_branch,
    parse_branch,
    task_branch,
)

FLAT = BranchContext(prd_id="P1", epic_id="E1", branching=Branching.FLAT)
PRD = BranchContext(prd_id="P1", epic_id="E1", branching=Branching.PRD)
EPIC = BranchContext(prd_id="P1", epic_id="E1", branching=Branching.EPIC)


class TestNames:
    def test_branch_names(self) -> None:
        assert task_branch("T1") == "task/T1"
        assert branch_for("epic", "E1") == "epic/E1"
        assert branch_for("prd", "P1") == "prd/P1"

    def test_parse_branch(self) -> None:
        assert parse_branch("task/T1") == ("task", "T1")
        assert parse_branch("prd/PRD-001") == ("prd", "PRD-001")
        assert parse_branch("main") is None
        assert parse_branch("task/") is None


class TestParentBranch:
    @pytest.mark.parametrize(
        ("context", "expected"),
        [
            (FLAT, "main"),
            (PRD, "prd/P1"),
            (EPIC, "epic/E1"),
            (BranchContext(prd_id="P1", branching=Branching.EPIC), "prd/P1"),
            (BranchContext(branching=Branching.EPIC), "main"),
        ],
    )
    def test_task_parent(self, context: BranchContext, expected: str) -> None:
        assert parent_branch("task", context) == expected

    def test_epic_and_prd_parents(self) -> None:
        assert parent_branch("epic", EPIC) == "prd/P1"
        assert parent_branch("prd", EPIC) == "main"

    def test_custom_main_branch(self) -> None:
        assert parent_branch("task", FLAT, main_branch="trunk") == "trunk"


class TestChain:
    def test_chains(self) -> None:
        assert hierarchy_chain(FLAT) == ["main"]
        assert hierarchy_chain(PRD) == ["main", "prd/P1"]
        assert hierarchy_chain(EPIC) == ["main", "prd/P1", "epic/E1"]

    def test_edges_end_with_tasks(self) -> None:
        assert hierarchy_edges(EPIC, task_ids=["T1", "T2"]) == [
            ("prd/P1", "main"),
            ("epic/E1", "prd/P1"),
            ("task/T1", "epic/E1"),
            ("task/T2", "epic/E1"),
        ]

    def test_flat_edges(self) -> None:
        assert hierarchy_edges(FLAT, task_ids=["T1"]) == [("task/T1", "main")]


class TestContextFor:
    def test_from_task(self) -> None:
        task = TaskNode(id="T1", prd_id="P1", epic_id="E1")
        context = context_for(task, "epic")
        assert context == EPIC
