"""Tests for composed git questions: divergence, trial merges, merged-ness."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.core.result import Err, Ok
from shipyard.git import (
    AsyncRepo,
    divergence,
    is_merged,
    modified_files,
    trial_merge,
    uncommitted_paths,
)
from tests.mocks.git_sandbox import GitSandbox


class TestDivergence:
    @pytest.mark.asyncio
    async def test_ahead_and_behind(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")
        sandbox.commit("b.txt", "b\n")

        match await divergence(repo, "task/T1", "main"):
            case Ok(counts):
                assert (counts.ahead, counts.behind) == (1, 1)
                assert counts.diverged
            case Err(err):
                pytest.fail(str(err))

    @pytest.mark.asyncio
    async def test_missing_branch_is_err(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        assert isinstance(await divergence(repo, "task/NOPE", "main"), Err)


class TestTrialMerge:
    @pytest.mark.asyncio
    async def test_reports_conflicting_files(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "README.md", "task\n")
        sandbox.commit("README.md", "main\n")

        assert await trial_merge(repo, "task/T1", "main") == Ok(["README.md"])

    @pytest.mark.asyncio
    async def test_clean(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")
        sandbox.commit("b.txt", "b\n")

        assert await trial_merge(repo, "task/T1", "main") == Ok([])


class TestIsMerged:
    @pytest.mark.asyncio
    async def test_unmerged_branch(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")

        assert await is_merged(repo, "task/T1", "main") == Ok(False)

    @pytest.mark.asyncio
    async def test_regular_merge(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")
        sandbox.git("merge", "--no-ff", "-m", "merge", "task/T1")

        assert await is_merged(repo, "task/T1", "main") == Ok(True)

    @pytest.mark.asyncio
    async def test_squash_merge_counts_as_merged(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")
        sandbox.commit_on("task/T1", "b.txt", "b\n")
        sandbox.git("merge", "--squash", "task/T1")
        sandbox.git("commit", "-m", "T1: squashed")

        assert await repo.is_ancestor("task/T1", "main") == Ok(False)
        assert await is_merged(repo, "task/T1", "main") == Ok(True)

    @pytest.mark.asyncio
    async def test_squash_then_more_work_is_not_merged(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        sandbox.branch("task/T1")
        sandbox.commit_on("task/T1", "a.txt", "a\n")
        sandbox.git("merge", "--squash", "task/T1")
        sandbox.git("commit", "-m", "T1: squashed")
        sandbox.commit_on("task/T1", "late.txt", "late\n")

        assert await is_merged(repo, "task/T1", "main") == Ok(False)


class TestModifiedFiles:
    @pytest.mark.asyncio
    async def test_committed_plus_uncommitted(self, sandbox: GitSandbox, tmp_path: Path) -> None:
        repo = AsyncRepo(sandbox.root)
        checkout = tmp_path / "wt"
        sandbox.git("worktree", "add", "-b", "task/T1", str(checkout), "main")
        sandbox.commit("src/a.py", "a\n", cwd=checkout)
        (checkout / "notes.md").write_text("wip\n")
        # Work landing on main after the branch point is not the task's.
        sandbox.commit("main_only.txt", "m\n")

        assert await modified_files(repo, "task/T1", "main", checkout) == Ok(["notes.md", "src/a.py"])

    @pytest.mark.asyncio
    async def test_missing_base_falls_back_to_checkout(self, sandbox: GitSandbox, tmp_path: Path) -> None:
        repo = AsyncRepo(sandbox.root)
        checkout = tmp_path / "wt"
        sandbox.git("worktree", "add", "-b", "task/T1", str(checkout), "main")
        (checkout / "notes.md").write_text("wip\n")

        assert await modified_files(repo, "task/T1", "epic/GONE", checkout) == Ok(["notes.md"])
        assert isinstance(await modified_files(repo, "task/T1", "epic/GONE"), Err)


class TestUncommittedPaths:
    @pytest.mark.asyncio
    async def test_ignores_state_directories(self, sandbox: GitSandbox) -> None:
        repo = AsyncRepo(sandbox.root)
        state = sandbox.root / ".shipyard"
        state.mkdir()
        (state / "agents.json").write_text("{}")
        worktrees = sandbox.root / ".worktrees"
        sandbox.git("worktree", "add", "-b", "task/T1", str(worktrees / "T1"), "main")
        (sandbox.root / "real.txt").write_text("user change\n")

        match await uncommitted_paths(repo, [worktrees, state / "agents.json"]):
            case Ok(paths):
                assert paths == ["real.txt"]
            case Err(err):
                pytest.fail(str(err))

        raw = (await repo.changed_paths()).unwrap()
        assert len(raw) > 1

    @pytest.mark.asyncio
    async def test_checkout_inside_ignored_directory(self, sandbox: GitSandbox) -> None:
        worktrees = sandbox.root / ".worktrees"
        checkout = worktrees / "T1"
        sandbox.git("worktree", "add", "-b", "task/T1", str(checkout), "main")
        (checkout / "wip.txt").write_text("unsaved\n")

        assert await uncommitted_paths(AsyncRepo(checkout), [worktrees]) == Ok(["wip.txt"])
