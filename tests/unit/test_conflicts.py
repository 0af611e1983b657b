"""Tests for the file-overlap conflict matrix."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.core.artifacts import AgentRecord, AgentRegistry
from shipyard.git import AsyncRepo
from shipyard.worktree.conflicts import (
    active_worktrees,
    build_conflict_matrix,
    can_merge_without_conflict,
    collect_conflict_matrix,
    suggest_merge_order,
)
from shipyard.worktree.hierarchy import BranchContext
from shipyard.worktree.lifecycle import Worktree, WorktreeManager
from tests.mocks.git_sandbox import GitSandbox


class TestBuildMatrix:
    def test_pairwise_overlap(self) -> None:
        matrix = build_conflict_matrix(
            {
                "T2": ["src/api.py", "README.md"],
                "T1": ["src/api.py"],
                "T3": ["docs/index.md"],
            }
        )

        assert matrix.agents == ["T1", "T2", "T3"]
        assert [(e.agents, e.files) for e in matrix.conflicts] == [(("T1", "T2"), ["src/api.py"])]
        assert matrix.partners("T2") == ["T1"]
        assert matrix.conflicts_for("T3") == []
        assert can_merge_without_conflict("T3", matrix)
        assert not can_merge_without_conflict("T1", matrix)

    def test_duplicate_paths_collapse(self) -> None:
        matrix = build_conflict_matrix({"T1": ["a", "a", "b"]})
        assert matrix.files_by_agent["T1"] == ["a", "b"]
        assert not matrix.has_conflicts


class TestMergeOrder:
    def test_fewest_conflicts_first(self) -> None:
        matrix = build_conflict_matrix(
            {
                "T1": ["shared.py", "a.py"],
                "T2": ["shared.py"],
                "T3": ["shared.py", "x.py", "y.py"],
                "T4": ["solo.py", "solo2.py"],
            }
        )
        assert suggest_merge_order(matrix, ["T1", "T2", "T3", "T4"]) == ["T4", "T2", "T1", "T3"]

    def test_ties_break_on_id(self) -> None:
        matrix = build_conflict_matrix({"T2": ["b"], "T1": ["a"]})
        assert suggest_merge_order(matrix, ["T2", "T1"]) == ["T1", "T2"]


class TestLiveMatrix:
    @pytest.mark.asyncio
    async def test_collects_from_worktrees(self, sandbox: GitSandbox, tmp_path: Path) -> None:
        repo = AsyncRepo(sandbox.root)
        manager = WorktreeManager(repo, tmp_path / "wt")
        one = await manager.spawn("T1", BranchContext())
        two = await manager.spawn("T2", BranchContext())
        sandbox.commit("src/api.py", "one\n", cwd=one.path)
        (two.path / "src").mkdir()
        (two.path / "src" / "api.py").write_text("two, uncommitted\n")

        registry = AgentRegistry(
            tmp_path / "agents.json",
            [
                AgentRecord(task_id="T1", status="running", worktree=one.to_record()),
                AgentRecord(task_id="T2", status="completed", worktree=two.to_record()),
            ],
        )

        running_only = await collect_conflict_matrix(repo, active_worktrees(registry))
        assert running_only.agents == ["T1"]

        matrix = await collect_conflict_matrix(repo, active_worktrees(registry, include=["T2"]))
        assert [(e.agents, e.files) for e in matrix.conflicts] == [(("T1", "T2"), ["src/api.py"])]

    @pytest.mark.asyncio
    async def test_unreadable_agent_is_skipped(self, sandbox: GitSandbox, tmp_path: Path) -> None:
        repo = AsyncRepo(sandbox.root)
        manager = WorktreeManager(repo, tmp_path / "wt")
        one = await manager.spawn("T1", BranchContext())
        sandbox.commit("a.txt", "a\n", cwd=one.path)
        stale = Worktree(task_id="T9", path=tmp_path / "wt" / "T9", branch="task/T9", base_branch="main")

        matrix = await collect_conflict_matrix(repo, [one, stale])

        assert matrix.agents == ["T1"]
        assert matrix.files_by_agent == {"T1": ["a.txt"]}
        assert matrix.skipped == {"T9": "branch task/T9 missing"}
        assert suggest_merge_order(matrix, ["T1"]) == ["T1"]
