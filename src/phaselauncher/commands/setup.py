"""Project initialization and plan authoring.

Provides CLI commands for:
    - Writing `.phaselauncher/config.json` from a preset and an empty plan
    - Asking an agent to detect validation commands for the project
    - Asking an agent to turn requirements into a phased plan
"""

from __future__ import annotations

import asyncio

import click
import typer
from rich import box
from rich.panel import Panel

from phaselauncher.core.config import PRESETS, write_preset
from phaselauncher.core.console import console
from phaselauncher.core.decorators import handle_exceptions
from phaselauncher.core.result import PlanNotFoundError
from phaselauncher.dispatch import DispatchRequest, ProcessDispatcher, PromptBuilder
from phaselauncher.plan import PlanStore


def _plan_store(state) -> PlanStore:
    return PlanStore(state.paths.plan_file, lock_timeout=state.config.storage.lock_timeout)


@handle_exceptions
def init(
    ctx: typer.Context,
    preset: str | None = typer.Option(
        None,
        "--preset",
        click_type=click.Choice(sorted(PRESETS)),
        help="Config preset to write (default: empty, or keep an existing config).",
    ),
) -> None:
    """Create `.phaselauncher/` with a config file and an empty task plan."""
    state = ctx.obj
    paths = state.paths

    plan = _plan_store(state).initialize()
    console.print(f"[green]Created[/green] {paths.plan_file} ({len(plan.phases)} phases)")

    if preset is None and paths.config_file.exists():
        console.print(f"[dim]Keeping existing {paths.config_file}[/dim]")
    else:
        write_preset(paths.config_file, preset or "empty")
        console.print(f"[green]Wrote[/green] {paths.config_file} (preset: {preset or 'empty'})")

    console.print(
        Panel(
            "Next: `plaunch smart-init` to detect validation commands, then\n"
            '`plaunch create-task "<requirements>"` to generate the plan.',
            box=box.SIMPLE,
        )
    )


def _start_agent(state, label: str, title: str, prompt: str) -> None:
    request = DispatchRequest(label=label, title=title, prompt=prompt, cwd=state.project_root)
    asyncio.run(ProcessDispatcher(state.config.agent.command).launch(request))


@handle_exceptions
def smart_init(ctx: typer.Context) -> None:
    """Launch an agent that writes a config with validation commands for this project."""
    state = ctx.obj
    store = _plan_store(state)
    if not store.exists():
        store.initialize()

    prompt = PromptBuilder(state.config).smart_init_prompt()
    _start_agent(state, "smart-init", "Smart Init", prompt)
    console.print("Launched an agent to analyze the project.")
    console.print(f"It will write {state.paths.config_file}; then run `plaunch create-task`.")


@handle_exceptions
def create_task(
    ctx: typer.Context,
    requirements: str = typer.Argument(..., help="What the plan should implement."),
) -> None:
    """Launch an agent that turns requirements into a phased task plan."""
    state = ctx.obj
    store = _plan_store(state)
    if not store.exists():
        raise PlanNotFoundError(
            "No task plan found. Run `plaunch init` first.", context={"path": str(store.path)}
        )

    prompt = PromptBuilder(state.config).plan_tasks_prompt(requirements)
    _start_agent(state, "task-planning", "Task Planning", prompt)
    console.print(f"Launched an agent to write the plan into {store.path}.")
    console.print("Once it finishes, run `plaunch` to start execution.")


COMMANDS = {"init": init, "smart-init": smart_init, "create-task": create_task}
