from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, NoReturn, TypeVar

import typer
from rich.markup import escape

from phaselauncher.core.console import console, get_logger
from phaselauncher.core.result import LauncherError

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)


def _exit_with(exc: Exception) -> NoReturn:
    console.print(f"[red]Error: {escape(str(exc))}[/red]")
    raise typer.Exit(code=1)


def handle_exceptions(func: F) -> F:
    """Report launcher errors raised by a command in red and exit with status 1.

    Anything else propagates so Typer shows the traceback.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (LauncherError, PermissionError) as exc:
            logger.debug("%s failed", func.__name__, exc_info=True)
            _exit_with(exc)

    return wrapper  # type: ignore[return-value]


__all__ = ["handle_exceptions"]
