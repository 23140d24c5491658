"""Console output and logging for plaunch.

User-facing output goes to ``console`` (stdout); log records go to stderr
through a Rich handler so agent prompts piped from stdout stay clean.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()
stderr_console = Console(stderr=True)

PACKAGE_LOGGER = "phaselauncher"

# Serialized status value -> Rich style
STATUS_STYLES: dict[str, str] = {
    "TODO": "white",
    "IN_PROGRESS": "yellow",
    "DONE": "green",
    "Active": "cyan",
    "Completed": "green",
    "Stale": "red",
}


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Send package log records to stderr; ``verbose`` forces DEBUG."""
    if verbose:
        numeric_level = logging.DEBUG
    elif isinstance(level, str):
        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            numeric_level = logging.INFO
    else:
        numeric_level = level

    handler = RichHandler(
        console=stderr_console,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(numeric_level)
    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or PACKAGE_LOGGER)


def status_badge(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"
