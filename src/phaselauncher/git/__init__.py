"""Async git plumbing for the worktree lifecycle manager.

This package provides:
    - AsyncRepo: non-blocking git commands for one working tree
    - GitWorktree: an entry of `git worktree list --porcelain`
    - is_repo: whether a directory is inside a git working tree
"""

from __future__ import annotations

from .client import AsyncRepo, GitWorktree, is_repo, parse_worktree_list

__all__ = [
    "AsyncRepo",
    "GitWorktree",
    "is_repo",
    "parse_worktree_list",
]
