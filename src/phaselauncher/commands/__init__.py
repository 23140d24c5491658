"""CLI command modules for plaunch.

This package contains the user-facing CLI commands organized by domain:
    - launch: advance the plan, run tasks, status, mark-step
    - setup: init, smart-init, create-task
    - worktree: run phases in worktrees and manage them
"""

from __future__ import annotations

from . import launch, setup, worktree

__all__ = ["launch", "setup", "worktree"]
