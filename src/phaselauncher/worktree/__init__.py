"""Per-phase git worktree isolation.

This package provides:
    - WorktreeStateStore: cached records of the worktrees this tool created
    - WorktreeLifecycleManager: create, complete, remove, reconcile, cleanup
"""

from __future__ import annotations

from .manager import CleanupReport, WorktreeLifecycleManager, WorktreeOverview, render_worktree_name
from .state import WorktreeRecord, WorktreeState, WorktreeStateStore, WorktreeStatus

__all__ = [
    "CleanupReport",
    "WorktreeLifecycleManager",
    "WorktreeOverview",
    "WorktreeRecord",
    "WorktreeState",
    "WorktreeStateStore",
    "WorktreeStatus",
    "render_worktree_name",
]
