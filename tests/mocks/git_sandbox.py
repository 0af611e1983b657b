"""Throwaway git repositories for tests, driven with plain git commands."""

from __future__ import annotations

import subprocess
from pathlib import Path


class GitSandbox:
    """A real repository on `main`. Setup only; never the system under test."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def git(self, *args: str, cwd: Path | None = None) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd or self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout.strip()

    def commit(
        self, filename: str, content: str, message: str | None = None, cwd: Path | None = None
    ) -> str:
        """Write one file, commit it and return the new HEAD sha."""
        where = cwd or self.root
        target = where / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        self.git("add", filename, cwd=where)
        self.git("commit", "-m", message or f"Update {filename}", cwd=where)
        return self.git("rev-parse", "HEAD", cwd=where)

    def branch(self, name: str, start: str = "main") -> None:
        self.git("branch", name, start)

    def checkout(self, name: str) -> None:
        self.git("checkout", name)

    def commit_on(self, branch: str, filename: str, content: str, message: str | None = None) -> str:
        """Commit on `branch` and come back to the branch that was checked out."""
        current = self.current_branch()
        self.checkout(branch)
        try:
            return self.commit(filename, content, message)
        finally:
            self.checkout(current)

    def head(self, ref: str = "HEAD") -> str:
        return self.git("rev-parse", ref)

    def current_branch(self, cwd: Path | None = None) -> str:
        return self.git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)

    def status(self, cwd: Path | None = None) -> str:
        return self.git("status", "--porcelain", cwd=cwd)

    def branches(self) -> list[str]:
        output = self.git("for-each-ref", "--format=%(refname:short)", "refs/heads")
        return [line for line in output.splitlines() if line]


def init_repo(path: Path) -> GitSandbox:
    """Initialize a git repository on `main` with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    sandbox = GitSandbox(path.resolve())
    sandbox.git("init")
    sandbox.git("symbolic-ref", "HEAD", "refs/heads/main")
    sandbox.git("config", "user.email", "test@test.com")
    sandbox.git("config", "user.name", "Test User")
    sandbox.git("config", "commit.gpgsign", "false")
    sandbox.commit("README.md", "# Test Repo\n", "Initial commit")
    return sandbox
