"""phaselauncher - phased task plans executed by parallel agents.

This package provides the core functionality for the `plaunch` command-line
tool: the task plan store, the phase progression engine with its CTO
validation gate, agent dispatch, and per-phase git worktree isolation.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
