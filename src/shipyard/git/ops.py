"""High-level git operations.

Composes GitBackend primitives into the questions the orchestration layer asks:
    - How far apart are a branch and its parent
    - Would merging them conflict
    - Which files has a task touched
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from shipyard.core.result import Err, GitError, Ok, Result

from .client import GitBackend


@dataclass(frozen=True)
class Divergence:
    """Commit counts between a branch and its parent."""

    ahead: int  # commits on the branch the parent lacks
    behind: int  # commits on the parent the branch lacks

    @property
    def diverged(self) -> bool:
        return self.ahead > 0 and self.behind > 0


async def divergence(repo: GitBackend, branch: str, parent: str) -> Result[Divergence, GitError]:
    """Count commits unique to each side of `parent...branch`."""
    match await repo.left_right_count(parent, branch):
        case Ok((parent_only, branch_only)):
            return Ok(Divergence(ahead=branch_only, behind=parent_only))
        case Err(err):
            return Err(err)


async def trial_merge(repo: GitBackend, branch: str, parent: str) -> Result[list[str], GitError]:
    """Files that would conflict if `branch` and `parent` were merged.

    Nothing is written to any checkout or ref.
    """
    match await repo.merge_tree(parent, branch):
        case Ok(result):
            return Ok(result.conflicts)
        case Err(err):
            return Err(err)


async def is_merged(repo: GitBackend, branch: str, base: str) -> Result[bool, GitError]:
    """True when `base` already contains everything `branch` changed.

    Either `branch` is an ancestor of `base`, or merging `branch` into `base`
    would produce exactly the tree `base` already has (the case after a squash
    merge, where the task commits themselves never reach the base).
    """
    match await repo.is_ancestor(branch, base):
        case Err(err):
            return Err(err)
        case Ok(True):
            return Ok(True)
        case Ok(False):
            pass

    match await repo.merge_tree(base, branch):
        case Err(err):
            return Err(err)
        case Ok(result):
            if not result.clean:
                return Ok(False)

    match await repo.rev_parse(f"{base}^{{tree}}"):
        case Ok(base_tree):
            return Ok(base_tree == result.tree)
        case Err(err):
            return Err(err)


async def modified_files(
    repo: GitBackend,
    branch: str,
    base: str,
    checkout: Path | None = None,
) -> Result[list[str], GitError]:
    """Files a task branch touched relative to its base, plus uncommitted work.

    Committed changes come from `git diff --name-only base...branch`. When the
    task checkout exists its uncommitted paths are added. If the diff cannot be
    computed (base branch gone) only the uncommitted paths are returned.
    """
    files: set[str] = set()
    diff_failed: GitError | None = None

    match await repo.diff_name_only(f"{base}...{branch}"):
        case Ok(paths):
            files.update(paths)
        case Err(err):
            diff_failed = err

    if checkout is not None and checkout.exists():
        match await repo.at(checkout).changed_paths():
            case Ok(paths):
                files.update(paths)
            case Err(err):
                if diff_failed is not None:
                    return Err(err)
    elif diff_failed is not None:
        return Err(diff_failed)

    return Ok(sorted(files))


async def uncommitted_paths(
    checkout: GitBackend, ignore: Iterable[Path] = ()
) -> Result[list[str], GitError]:
    """Uncommitted paths in a checkout, minus anything under `ignore`.

    `ignore` holds the state shipyard itself keeps inside the repository
    (task worktrees, the agent registry) so it never counts as user changes.
    An ignore path that contains the checkout itself does not apply to it.
    """
    root = checkout.path.resolve()
    skipped = [path.resolve() for path in ignore]
    skipped = [path for path in skipped if not root.is_relative_to(path)]
    match await checkout.changed_paths():
        case Err(err):
            return Err(err)
        case Ok(paths):
            return Ok(
                [
                    path
                    for path in paths
                    if not any((root / path).resolve().is_relative_to(s) for s in skipped)
                ]
            )
