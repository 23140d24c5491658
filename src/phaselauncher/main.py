"""The `plaunch` command line.

Running `plaunch` without a command advances the plan in parallel mode; it is
what every dispatched agent runs once its step is recorded.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .commands.launch import launch
from .core.config import ConfigLoadResult, LauncherConfig, ProjectPaths, load_config
from .core.console import console, get_logger, setup_logging
from .core.registry import discover_commands
from .core.result import ConfigError

app = typer.Typer(
    help="plaunch: run a phased task plan with parallel agents and CTO validation.",
    no_args_is_help=False,
)
logger = get_logger(__name__)


@dataclass
class AppState:
    """Per-invocation context handed to every command through ``ctx.obj``."""

    config: LauncherConfig
    config_meta: ConfigLoadResult
    project_root: Path

    @property
    def paths(self) -> ProjectPaths:
        return ProjectPaths(self.project_root)

    def require_valid_config(self) -> None:
        """Refuse to advance the plan while Safe Mode defaults are in effect."""
        if self.config_meta.error:
            raise ConfigError(
                "Configuration is invalid; fix it before advancing the plan",
                context={"path": str(self.config_meta.path)},
            )


def _safe_mode_panel(meta: ConfigLoadResult) -> Panel:
    return Panel(
        f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
        f"{meta.path} could not be used:\n{meta.error}\n\n"
        "[yellow]Running with default settings. Fix the file or recreate it with "
        "`plaunch init --preset empty`.[/yellow]",
        border_style="red",
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Path | None = typer.Option(
        None, "--project", "-p", help="Project directory (defaults to the current directory)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Without a command, advance the plan in parallel mode (same as `plaunch launch`)."""
    project_root = (project or Path.cwd()).expanduser().resolve()
    config, meta = load_config(project_root)
    setup_logging(level=config.log_level, verbose=verbose)
    ctx.obj = AppState(config=config, config_meta=meta, project_root=project_root)

    if meta.error:
        console.print(_safe_mode_panel(meta))
    elif meta.file_loaded or meta.env_overrides:
        logger.debug("Config %s, env overrides %s", meta.path, sorted(meta.env_overrides))

    if ctx.invoked_subcommand is None:
        launch(ctx)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the active configuration, one table per section."""
    state: AppState = ctx.obj
    settings = state.config.model_dump(mode="json")

    top = Table(title="Config", box=box.SIMPLE)
    top.add_column("Key", style="cyan", no_wrap=True)
    top.add_column("Value")
    sections = {k: v for k, v in settings.items() if isinstance(v, dict)}
    for key, value in settings.items():
        if key not in sections:
            top.add_row(key, str(value))
    console.print(top)

    for section, values in sections.items():
        table = Table(title=section, box=box.SIMPLE)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value")
        for key, value in values.items():
            table.add_row(key, str(value))
        console.print(table)

    meta = state.config_meta
    source = f"{meta.path} ({'loaded' if meta.file_loaded else 'not loaded, defaults + env'})"
    if meta.env_overrides:
        source += "\nEnv overrides: " + ", ".join(sorted(meta.env_overrides))
    console.print(Panel(source, title="Source", box=box.SIMPLE))


@app.command("version")
def show_version() -> None:
    """Print the phase-launcher version."""
    console.print(__version__)


def _register_commands() -> None:
    found = discover_commands()
    for spec in found.commands:
        app.command(spec.name)(spec.handler)
    for name, group in found.groups:
        app.add_typer(group, name=name)


_register_commands()


def cli() -> None:
    app()
