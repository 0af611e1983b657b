"""
Unified Result types and error hierarchy for shipyard.

This module provides:
1. Result[T, E] type for explicit error handling at the git boundary
2. Domain-specific exception hierarchy
3. Helper functions for Result operations

Usage:
    from shipyard.core.result import Ok, Err, Result, GitError

    async def branch_exists(name: str) -> Result[bool, GitError]:
        ...

    match await repo.branch_exists("epic/E001"):
        case Ok(exists):
            ...
        case Err(err):
            print(err.message)

Validation problems and escalations are plain data, not exceptions. Only
operation failures (a git command that could not complete) raise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)
F = TypeVar("F", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Represents a successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Return the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return the contained value (ignores default for Ok)."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        """No-op for Ok - returns self unchanged."""
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        """Return the default value."""
        return default

    def map(self, fn: Callable[[Any], Any]) -> Err[E]:
        """No-op for Err - returns self unchanged."""
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        """Apply a function to the contained error."""
        return Err(fn(self.error))


# Type alias for Result
Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Domain-specific error hierarchy
# ---------------------------------------------------------------------------


class ShipyardError(Exception):
    """Base exception for all shipyard errors.

    Carries a human message, a context mapping for diagnostics and an optional
    remedy: the exact command a user can run to resolve the problem.
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.remedy = remedy

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ConfigurationError(ShipyardError):
    """Raised for configuration issues.

    Examples:
    - Config file parse errors
    - Invalid merge strategy names
    """


class ArtifactError(ShipyardError):
    """Raised when task or agent records cannot be read at the boundary.

    Examples:
    - Task snapshot file missing or unparsable
    - Record without an id
    - Agent registry is not a JSON object
    """


class GitError(ShipyardError):
    """Raised (or carried in Err) when a git subprocess fails."""


class OperationError(ShipyardError):
    """A requested mutation could not complete.

    Fatal to the single operation only. Raised after any in-progress git
    operation has been aborted, so the repository is back in its
    pre-operation state.
    """


class ParentBranchMissing(OperationError):
    """The integration branch a task or tier merges into does not exist."""


class DirtyWorktree(OperationError):
    """A checkout has uncommitted changes that block the operation."""


class MergeConflict(OperationError):
    """A merge, squash or rebase stopped on conflicts and was aborted."""


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def unwrap_or_raise(result: Result[T, GitError], error_type: type[OperationError] = OperationError) -> T:
    """Return the Ok value or re-raise the git failure as an operation error."""
    match result:
        case Ok(value):
            return value
        case Err(err):
            raise error_type(err.message, context=err.context) from err
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    # Result types
    "Ok",
    "Err",
    "Result",
    # Error hierarchy
    "ShipyardError",
    "ConfigurationError",
    "ArtifactError",
    "GitError",
    "OperationError",
    "ParentBranchMissing",
    "DirtyWorktree",
    "MergeConflict",
    # Helpers
    "unwrap_or_raise",
]
