"""Command discovery for the plaunch CLI.

A module under ``phaselauncher.commands`` contributes either top-level
commands through a ``COMMANDS`` mapping (CLI name -> callable) or a command
group through a module-level ``app`` Typer instance, mounted under the
module's name.
"""

from __future__ import annotations

import importlib
import pkgutil
from collections.abc import Callable
from dataclasses import dataclass
from types import ModuleType

import typer

from phaselauncher.core.console import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: Callable[..., None]


@dataclass
class CommandSet:
    commands: list[CommandSpec]
    groups: list[tuple[str, typer.Typer]]


def _collect(module: ModuleType, found: CommandSet) -> None:
    declared = getattr(module, "COMMANDS", None)
    if isinstance(declared, dict):
        found.commands.extend(CommandSpec(name, handler) for name, handler in declared.items())
        return
    group = getattr(module, "app", None)
    if isinstance(group, typer.Typer):
        found.groups.append((module.__name__.rsplit(".", 1)[-1].replace("_", "-"), group))


def discover_commands(package: str = "phaselauncher.commands") -> CommandSet:
    """Import every public module of ``package`` and collect what it declares."""
    root = importlib.import_module(package)
    found = CommandSet(commands=[], groups=[])
    for info in sorted(pkgutil.iter_modules(root.__path__), key=lambda i: i.name):
        if info.name.startswith("_"):
            continue
        _collect(importlib.import_module(f"{package}.{info.name}"), found)
    logger.debug(
        "Discovered %d command(s) and %d group(s)", len(found.commands), len(found.groups)
    )
    return found
