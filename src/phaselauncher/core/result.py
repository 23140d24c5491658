"""
Result types and error hierarchy for phase-launcher.

This module provides:
1. Result[T, E] type used at the git and shell-command seams
2. The launcher's exception hierarchy
3. Helper functions for Result operations

Usage:
    from phaselauncher.core.result import Ok, Err, Result, GitError

    def rev_parse(ref: str) -> Result[str, GitError]:
        if missing:
            return Err(GitError("unknown revision", context={"ref": ref}))
        return Ok(sha)

    match rev_parse("main"):
        case Ok(sha):
            ...
        case Err(err):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

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
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        """Apply a function to the contained error."""
        return Err(fn(self.error))


Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class LauncherError(Exception):
    """Base exception for all phase-launcher errors.

    Carries an optional ``context`` mapping that is rendered after the
    message, so CLI output shows the ids and paths involved.
    """

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ConfigError(LauncherError):
    """Raised when configuration cannot be loaded or validated."""


# Plan store -----------------------------------------------------------------


class PlanNotFoundError(LauncherError):
    """No plan document exists for the project."""


class PlanExistsError(LauncherError):
    """Initialization refused because a plan document already exists."""


class PhaseNotFoundError(LauncherError):
    """The requested phase id is not part of the plan."""


class StepNotFoundError(LauncherError):
    """The (phase id, step id) pair does not exist."""


class InvalidTransitionError(LauncherError):
    """A status change would move a step or phase backwards."""


class DocumentFormatError(LauncherError):
    """A persisted JSON document is malformed or violates its schema."""


class StoreLockTimeoutError(LauncherError):
    """The store lock could not be acquired in time."""


# Git / worktrees --------------------------------------------------------------


class GitError(LauncherError):
    """A git command failed or could not be started."""


class BaseBranchMissingError(LauncherError):
    """The configured base branch does not resolve."""


class WorktreeAlreadyExistsError(LauncherError):
    """An Active worktree already exists for the phase."""


class WorktreeNameCollisionError(LauncherError):
    """No unused worktree name could be rendered."""


class WorktreeCreationFailed(LauncherError):
    """git refused to create the worktree."""


class WorktreeDirtyError(LauncherError):
    """The worktree has uncommitted changes and removal was not forced."""


class WorktreeCapacityExceededError(LauncherError):
    """max_worktrees is reached and no Completed worktree can be evicted."""


class WorktreeNotFoundError(LauncherError):
    """No worktree record has the requested name."""


class WorktreeSyncError(LauncherError):
    """Rebasing a worktree onto its base branch failed."""


# Execution --------------------------------------------------------------------


class CommandExecutionError(LauncherError):
    """A shell command could not be run at all."""


class ValidationCommandExecutionError(CommandExecutionError):
    """A validation command could not be run (distinct from reporting failures)."""


class MaxConcurrentTasksExceededError(LauncherError):
    """More tasks were selected than may be dispatched at once."""


__all__ = [
    "BaseBranchMissingError",
    "CommandExecutionError",
    "ConfigError",
    "DocumentFormatError",
    "Err",
    "GitError",
    "InvalidTransitionError",
    "LauncherError",
    "MaxConcurrentTasksExceededError",
    "Ok",
    "PhaseNotFoundError",
    "PlanExistsError",
    "PlanNotFoundError",
    "Result",
    "StepNotFoundError",
    "StoreLockTimeoutError",
    "ValidationCommandExecutionError",
    "WorktreeAlreadyExistsError",
    "WorktreeCapacityExceededError",
    "WorktreeCreationFailed",
    "WorktreeDirtyError",
    "WorktreeNameCollisionError",
    "WorktreeNotFoundError",
    "WorktreeSyncError",
]
