from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipyard.core.result import Err, GitError, Ok, Result

logger = logging.getLogger(__name__)


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    is_locked: bool
    prunable: bool
    detached: bool = False


@dataclass(frozen=True)
class MergeTreeResult:
    """Outcome of a trial merge: the resulting tree and any conflicted paths."""

    tree: str
    conflicts: list[str]

    @property
    def clean(self) -> bool:
        return not self.conflicts


@dataclass(frozen=True)
class GitRun:
    """Raw outcome of one git invocation."""

    returncode: int
    stdout: str
    stderr: str


async def _exec_git(cwd: Path, *args: str) -> Result[GitRun, GitError]:
    """Run git with an explicit argument list; Err only when git cannot start.

    The child process is shielded from cancellation of the awaiting task: an
    in-flight git operation always runs to completion.
    """
    if not cwd.exists():
        return Err(GitError("Repository path does not exist", context={"cwd": str(cwd)}))

    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except FileNotFoundError:
        return Err(GitError("git executable not found on PATH", context={"cwd": str(cwd)}))
    except OSError as exc:
        return Err(
            GitError(
                "Failed to start git",
                context={"cwd": str(cwd), "args": list(args), "error": str(exc)},
            )
        )

    stdout, stderr = await asyncio.shield(process.communicate())
    return Ok(
        GitRun(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
    )


async def _run_git(cwd: Path, *args: str) -> Result[str, GitError]:
    """Run git and return stdout as text, wrapping non-zero exits."""
    match await _exec_git(cwd, *args):
        case Err(err):
            return Err(err)
        case Ok(run):
            pass

    if run.returncode != 0:
        detail = run.stderr.strip() or run.stdout.strip() or f"git {' '.join(args)} failed"
        return Err(
            GitError(
                detail,
                context={"cwd": str(cwd), "args": list(args), "returncode": run.returncode},
            )
        )
    return Ok(run.stdout)


def _safe_int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _worktree_from_fields(current: dict[str, str]) -> WorktreeInfo:
    return WorktreeInfo(
        path=Path(current.get("worktree", "")),
        branch=current.get("branch", "").replace("refs/heads/", ""),
        commit=current.get("HEAD", ""),
        is_locked="locked" in current,
        prunable="prunable" in current,
        detached="detached" in current,
    )


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output."""
    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}

    for line in output.splitlines():
        if not line.strip():
            if current:
                worktrees.append(_worktree_from_fields(current))
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[9:]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[5:]
        elif line.startswith("branch "):
            current["branch"] = line[7:]
        elif line.startswith("locked"):
            current["locked"] = "true"
        elif line.startswith("prunable"):
            current["prunable"] = "true"
        elif line == "detached":
            current["detached"] = "true"

    # Handle last entry if no trailing newline
    if current:
        worktrees.append(_worktree_from_fields(current))

    return worktrees


def _parse_porcelain_paths(output: str) -> list[str]:
    """File paths from `git status --porcelain` (v1), rename targets included."""
    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


class GitBackend(Protocol):
    """Typed git-operation interface consumed by the orchestration layer.

    Every method maps to one git invocation with an explicit argument list.
    `at()` returns the same interface bound to another checkout of the same
    repository (a task worktree).
    """

    @property
    def path(self) -> Path: ...

    def at(self, path: Path) -> GitBackend: ...

    async def changed_paths(self) -> Result[list[str], GitError]: ...

    async def has_commits(self) -> Result[bool, GitError]: ...

    async def rev_parse(self, ref: str) -> Result[str, GitError]: ...

    async def current_branch(self) -> Result[str, GitError]: ...

    async def branch_exists(self, branch: str) -> Result[bool, GitError]: ...

    async def ref_exists(self, ref: str) -> Result[bool, GitError]: ...

    async def list_branches(self, *patterns: str) -> Result[list[str], GitError]: ...

    async def rev_list_count(self, ref_range: str) -> Result[int, GitError]: ...

    async def left_right_count(self, left: str, right: str) -> Result[tuple[int, int], GitError]: ...

    async def is_ancestor(self, ancestor: str, descendant: str) -> Result[bool, GitError]: ...

    async def merge_tree(self, ours: str, theirs: str) -> Result[MergeTreeResult, GitError]: ...

    async def diff_name_only(self, ref_range: str) -> Result[list[str], GitError]: ...

    async def checkout_branch(self, branch: str, *, create: bool = False) -> Result[None, GitError]: ...

    async def merge(
        self,
        branch: str,
        *,
        no_ff: bool = False,
        ff_only: bool = False,
        message: str | None = None,
    ) -> Result[str, GitError]: ...

    async def merge_squash(self, branch: str) -> Result[None, GitError]: ...

    async def merge_abort(self) -> Result[None, GitError]: ...

    async def reset_merge(self) -> Result[None, GitError]: ...

    async def commit(self, message: str) -> Result[str, GitError]: ...

    async def rebase(self, upstream: str) -> Result[None, GitError]: ...

    async def rebase_abort(self) -> Result[None, GitError]: ...

    async def worktree_add(
        self,
        path: Path,
        branch: str,
        *,
        new_branch: bool = True,
        start_point: str | None = None,
    ) -> Result[Path, GitError]: ...

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]: ...

    async def worktree_list(self) -> Result[list[WorktreeInfo], GitError]: ...

    async def worktree_prune(self) -> Result[None, GitError]: ...

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]: ...

    async def has_remote(self, remote: str) -> Result[bool, GitError]: ...

    async def delete_remote_branch(self, remote: str, branch: str) -> Result[None, GitError]: ...

    async def push(self, remote: str, branch: str, *, set_upstream: bool = True) -> Result[None, GitError]: ...


class AsyncRepo:
    """Async git wrapper built on subprocess plumbing."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        root = Path(path).expanduser()
        match await _run_git(root, "rev-parse", "--show-toplevel"):
            case Ok(raw):
                return Ok(cls(Path(raw.strip()).resolve()))
            case Err(err):
                return Err(err)

    def at(self, path: Path) -> AsyncRepo:
        """Return a repo handle bound to another checkout (e.g. a task worktree)."""
        return AsyncRepo(path)

    async def _exit_status(self, *args: str) -> Result[bool, GitError]:
        """Run a yes/no plumbing command: exit 0 is True, exit 1 is False."""
        match await _exec_git(self._root, *args):
            case Err(err):
                return Err(err)
            case Ok(run):
                if run.returncode == 0:
                    return Ok(True)
                if run.returncode == 1:
                    return Ok(False)
                return Err(
                    GitError(
                        run.stderr.strip() or f"git {' '.join(args)} failed",
                        context={"cwd": str(self._root), "args": list(args), "returncode": run.returncode},
                    )
                )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def changed_paths(self) -> Result[list[str], GitError]:
        """Uncommitted paths (staged, unstaged and untracked) in this checkout."""
        match await _run_git(self._root, "status", "--porcelain", "--untracked-files=all"):
            case Ok(output):
                return Ok(_parse_porcelain_paths(output))
            case Err(err):
                return Err(err)

    async def head(self, short: bool = True) -> Result[str, GitError]:
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
        match await _run_git(self._root, *args):
            case Ok(output):
                return Ok(output.strip())
            case Err(err):
                return Err(err)

    async def rev_parse(self, ref: str) -> Result[str, GitError]:
        match await _run_git(self._root, "rev-parse", "--verify", ref):
            case Ok(output):
                return Ok(output.strip())
            case Err(err):
                return Err(err)

    async def has_commits(self) -> Result[bool, GitError]:
        return await self._exit_status("rev-parse", "--verify", "--quiet", "HEAD")

    async def current_branch(self) -> Result[str, GitError]:
        """Name of the checked-out branch, or "HEAD" when detached."""
        match await _run_git(self._root, "rev-parse", "--abbrev-ref", "HEAD"):
            case Ok(output):
                return Ok(output.strip())
            case Err(err):
                return Err(err)

    # -------------------------------------------------------------------------
    # Refs and history
    # -------------------------------------------------------------------------

    async def branch_exists(self, branch: str) -> Result[bool, GitError]:
        return await self._exit_status("show-ref", "--verify", "--quiet", f"refs/heads/{branch}")

    async def ref_exists(self, ref: str) -> Result[bool, GitError]:
        return await self._exit_status("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")

    async def list_branches(self, *patterns: str) -> Result[list[str], GitError]:
        """Local branch names, optionally restricted to glob patterns like 'task/*'."""
        refs = [f"refs/heads/{pattern}" for pattern in patterns] or ["refs/heads"]
        match await _run_git(self._root, "for-each-ref", "--format=%(refname:short)", *refs):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    async def rev_list_count(self, ref_range: str) -> Result[int, GitError]:
        match await _run_git(self._root, "rev-list", "--count", ref_range):
            case Ok(output):
                return Ok(_safe_int(output.strip()))
            case Err(err):
                return Err(err)

    async def left_right_count(self, left: str, right: str) -> Result[tuple[int, int], GitError]:
        """Commits only in `left` and only in `right`, via rev-list --left-right."""
        match await _run_git(self._root, "rev-list", "--left-right", "--count", f"{left}...{right}"):
            case Ok(output):
                parts = output.split()
                if len(parts) != 2:
                    return Err(GitError("Unexpected rev-list output", context={"output": output}))
                return Ok((_safe_int(parts[0]), _safe_int(parts[1])))
            case Err(err):
                return Err(err)

    async def is_ancestor(self, ancestor: str, descendant: str) -> Result[bool, GitError]:
        return await self._exit_status("merge-base", "--is-ancestor", ancestor, descendant)

    async def merge_tree(self, ours: str, theirs: str) -> Result[MergeTreeResult, GitError]:
        """Trial-merge two branches without touching any checkout.

        Returns the resulting tree id and the conflicted paths (empty when the
        merge would be clean).
        Requires git >= 2.38 for `merge-tree --write-tree`.
        """
        args = ("merge-tree", "--write-tree", "--name-only", "--no-messages", ours, theirs)
        match await _exec_git(self._root, *args):
            case Err(err):
                return Err(err)
            case Ok(run):
                pass

        if run.returncode in (0, 1):
            lines = [line.strip() for line in run.stdout.splitlines() if line.strip()]
            # First line is the tree id of the (possibly conflicted) result.
            tree = lines[0] if lines else ""
            conflicts = sorted(set(lines[1:])) if run.returncode == 1 else []
            return Ok(MergeTreeResult(tree=tree, conflicts=conflicts))
        return Err(
            GitError(
                run.stderr.strip() or "git merge-tree failed",
                context={"cwd": str(self._root), "args": list(args), "returncode": run.returncode},
            )
        )

    async def diff_name_only(self, ref_range: str) -> Result[list[str], GitError]:
        match await _run_git(self._root, "diff", "--name-only", ref_range):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    # -------------------------------------------------------------------------
    # Worktree operations
    # -------------------------------------------------------------------------

    async def worktree_add(
        self,
        path: Path,
        branch: str,
        *,
        new_branch: bool = True,
        start_point: str | None = None,
    ) -> Result[Path, GitError]:
        """Create a new worktree.

        Args:
            path: Directory for the new worktree
            branch: Branch name (created if new_branch=True)
            new_branch: If True, create branch with -b flag
            start_point: Base commit/branch (default: HEAD)

        Returns:
            Ok(worktree_path) on success, Err(GitError) on failure
        """
        args: list[str] = ["worktree", "add"]
        if new_branch:
            args.extend(["-b", branch])
        args.append(str(path))
        if not new_branch:
            args.append(branch)
        elif start_point:
            args.append(start_point)

        match await _run_git(self._root, *args):
            case Ok(_):
                return Ok(path.resolve())
            case Err(err):
                return Err(err)

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]:
        """Remove a worktree; `force` removes it even if dirty."""
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))

        result = await _run_git(self._root, *args)
        return result.map(lambda _: None)

    async def worktree_list(self) -> Result[list[WorktreeInfo], GitError]:
        match await _run_git(self._root, "worktree", "list", "--porcelain"):
            case Ok(output):
                return Ok(_parse_worktree_list(output))
            case Err(err):
                return Err(err)

    async def worktree_prune(self) -> Result[None, GitError]:
        """Prune stale worktree references."""
        result = await _run_git(self._root, "worktree", "prune")
        return result.map(lambda _: None)

    # -------------------------------------------------------------------------
    # Merge operations
    # -------------------------------------------------------------------------

    async def merge(
        self,
        branch: str,
        *,
        no_ff: bool = False,
        ff_only: bool = False,
        message: str | None = None,
    ) -> Result[str, GitError]:
        """Merge a branch into current HEAD.

        Returns:
            Ok(commit_sha) on success, Err(GitError) on conflict/failure
        """
        args = ["merge", "--no-edit"]
        if no_ff:
            args.append("--no-ff")
        if ff_only:
            args.append("--ff-only")
        if message:
            args.extend(["-m", message])
        args.append(branch)

        match await _run_git(self._root, *args):
            case Ok(_):
                return await self.head(short=False)
            case Err(err):
                return Err(err)

    async def merge_squash(self, branch: str) -> Result[None, GitError]:
        """Stage the squashed changes of `branch`; the caller commits."""
        result = await _run_git(self._root, "merge", "--squash", branch)
        return result.map(lambda _: None)

    async def merge_abort(self) -> Result[None, GitError]:
        """Abort an in-progress merge."""
        result = await _run_git(self._root, "merge", "--abort")
        return result.map(lambda _: None)

    async def reset_merge(self) -> Result[None, GitError]:
        """Drop a staged squash (no MERGE_HEAD, so merge --abort does not apply)."""
        result = await _run_git(self._root, "reset", "--merge")
        return result.map(lambda _: None)

    async def commit(self, message: str) -> Result[str, GitError]:
        match await _run_git(self._root, "commit", "-m", message):
            case Err(err):
                return Err(err)
            case Ok(_):
                pass
        return await self.head(short=False)

    async def rebase(self, upstream: str) -> Result[None, GitError]:
        result = await _run_git(self._root, "rebase", upstream)
        return result.map(lambda _: None)

    async def rebase_abort(self) -> Result[None, GitError]:
        result = await _run_git(self._root, "rebase", "--abort")
        return result.map(lambda _: None)

    async def get_conflict_files(self) -> Result[list[str], GitError]:
        """Files with unresolved merge conflicts in this checkout."""
        return await self.diff_name_only("--diff-filter=U")

    # -------------------------------------------------------------------------
    # Branch operations
    # -------------------------------------------------------------------------

    async def checkout_branch(self, branch: str, *, create: bool = False) -> Result[None, GitError]:
        args = ["checkout"]
        if create:
            args.append("-b")
        args.append(branch)
        result = await _run_git(self._root, *args)
        return result.map(lambda _: None)

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]:
        """Delete a local branch (-d refuses unmerged branches, -D does not)."""
        flag = "-D" if force else "-d"
        result = await _run_git(self._root, "branch", flag, branch)
        return result.map(lambda _: None)

    # -------------------------------------------------------------------------
    # Remotes
    # -------------------------------------------------------------------------

    async def has_remote(self, remote: str) -> Result[bool, GitError]:
        match await _run_git(self._root, "remote"):
            case Ok(output):
                return Ok(remote in {line.strip() for line in output.splitlines()})
            case Err(err):
                return Err(err)

    async def delete_remote_branch(self, remote: str, branch: str) -> Result[None, GitError]:
        result = await _run_git(self._root, "push", remote, "--delete", branch)
        return result.map(lambda _: None)

    async def push(self, remote: str, branch: str, *, set_upstream: bool = True) -> Result[None, GitError]:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([remote, branch])
        result = await _run_git(self._root, *args)
        return result.map(lambda _: None)
