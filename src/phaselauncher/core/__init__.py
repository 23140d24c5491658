"""Core shared infrastructure for phaselauncher.

This package contains foundational utilities:
    - config: Project configuration and presets
    - console: Rich console output and logging
    - result: Result type and the error hierarchy
    - storage: Locked, atomic JSON documents
    - sys: Command execution
"""

from __future__ import annotations

from . import config, console

__all__ = ["config", "console"]
