"""Plan execution commands.

Provides CLI commands for:
    - Advancing the plan in parallel or step-by-step mode
    - Launching free-form tasks
    - Showing plan progress
    - Recording step completion (used by agents)
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich import box
from rich.markup import escape
from rich.table import Table

from phaselauncher.core.console import console, status_badge
from phaselauncher.core.decorators import handle_exceptions
from phaselauncher.dispatch import AdvanceResult, DispatchController, open_controller
from phaselauncher.engine import (
    AllDone,
    AwaitRunning,
    DispatchSteps,
    Halted,
    OutcomeBand,
    PhaseProgressionEngine,
    ValidatePhase,
    ValidationOutcome,
)
from phaselauncher.plan import DispatchMode, PlanStore, Status


def _plan_store(state) -> PlanStore:
    return PlanStore(state.paths.plan_file, lock_timeout=state.config.storage.lock_timeout)


async def _advance(project_root: Path, config, mode: DispatchMode) -> AdvanceResult:
    controller = await open_controller(project_root, config)
    return await controller.advance(mode)


def _print_validation(outcome: ValidationOutcome) -> None:
    report = outcome.report
    if outcome.accepted:
        how = "fixed in place" if outcome.fixed_in_place else "passed"
        console.print(f"[green]Phase {outcome.phase_id} accepted ({how}).[/green]")
    elif outcome.remediation_phase is not None:
        console.print(
            f"[yellow]Phase {outcome.phase_id}: {report.failures} failure(s); "
            f"remediation phase {outcome.remediation_phase.id} appended.[/yellow]"
        )
    elif outcome.halted_reason:
        console.print(f"[red]Phase {outcome.phase_id} halted: {outcome.halted_reason}[/red]")

    for command in report.outcomes:
        mark = "[green]ok[/green]" if command.passed else f"[red]{command.error_count} error(s)[/red]"
        console.print(f"  {escape(command.label)}: {mark}")
    if outcome.band is OutcomeBand.FEW and len(outcome.reports) > 1:
        console.print(f"  [dim]first run: {outcome.reports[0].failures} failure(s)[/dim]")


def _report(result: AdvanceResult) -> None:
    for outcome in result.validations:
        _print_validation(outcome)

    match result.action:
        case DispatchSteps(phase=phase):
            if not result.dispatched:
                console.print(f"[yellow]Phase {phase.id}: steps were claimed by another run.[/yellow]")
                return
            where = f" in worktree {result.worktree.name}" if result.worktree else ""
            table = Table(
                title=f"Phase {phase.id}: {escape(phase.name)}{where}", box=box.SIMPLE_HEAVY
            )
            table.add_column("Agent", style="cyan", no_wrap=True)
            table.add_column("Task", style="white")
            for request in result.dispatched:
                table.add_row(request.label, escape(request.title))
            console.print(table)
        case AwaitRunning(phase=phase, reason=reason):
            console.print(f"[yellow]Phase {phase.id}: waiting, {escape(reason)}.[/yellow]")
        case Halted(phase=phase, reason=reason):
            console.print(f"[red]Phase {phase.id} is halted: {escape(reason)}[/red]")
            raise typer.Exit(code=1)
        case AllDone():
            console.print("[green]All phases are DONE.[/green]")
        case _:
            console.print(f"[yellow]Stopped after {result.cycles} cycle(s).[/yellow]")


@handle_exceptions
def launch(ctx: typer.Context) -> None:
    """Advance the plan: validate finished phases, then start agents for every TODO step."""
    state = ctx.obj
    state.require_valid_config()
    _report(asyncio.run(_advance(state.project_root, state.config, DispatchMode.PARALLEL)))


@handle_exceptions
def step(ctx: typer.Context) -> None:
    """Advance the plan one step at a time: at most one agent runs at once."""
    state = ctx.obj
    state.require_valid_config()
    _report(asyncio.run(_advance(state.project_root, state.config, DispatchMode.STEP_BY_STEP)))


@handle_exceptions
def run_tasks(
    ctx: typer.Context,
    tasks: list[str] = typer.Argument(..., help="Task descriptions, one agent each (max 10)."),
) -> None:
    """Start one agent per free-form task without touching the plan."""
    state = ctx.obj

    async def _run() -> list:
        controller: DispatchController = await open_controller(state.project_root, state.config)
        return await controller.launch_tasks(tasks)

    requests = asyncio.run(_run())
    for request in requests:
        console.print(f"[cyan]{request.label}[/cyan] {escape(request.title)}")


@handle_exceptions
def status(ctx: typer.Context) -> None:
    """Show phases, step progress and what would run next."""
    state = ctx.obj
    store = _plan_store(state)
    plan = store.load()
    engine = PhaseProgressionEngine(store, state.config.cto, workdir=state.project_root)

    table = Table(title=f"{escape(state.config.name)} plan", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Phase", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Status", no_wrap=True)
    table.add_column("State", style="white", no_wrap=True)
    table.add_column("Steps done", no_wrap=True)
    table.add_column("Comment", style="dim")

    for phase in plan.ordered_phases():
        counts = phase.step_counts()
        table.add_row(
            str(phase.id),
            escape(phase.name),
            status_badge(phase.status.value),
            engine.phase_state(plan, phase).value,
            f"{counts[Status.DONE]}/{len(phase.steps)}",
            escape(phase.halted_reason or phase.comment),
        )
    console.print(table)

    match engine.next_action(DispatchMode.PARALLEL, plan):
        case DispatchSteps(phase=phase, steps=steps):
            ids = ", ".join(s.id for s in steps)
            console.print(f"Next: dispatch phase {phase.id} steps {ids}")
        case AwaitRunning(phase=phase, reason=reason):
            console.print(f"Next: phase {phase.id} waiting, {escape(reason)}")
        case Halted(phase=phase, reason=reason):
            console.print(f"[red]Next: phase {phase.id} halted: {escape(reason)}[/red]")
        case AllDone():
            console.print("[green]Next: nothing, all phases are DONE[/green]")
        case ValidatePhase(phase=phase):
            console.print(f"Next: validate phase {phase.id}")


@handle_exceptions
def mark_step(
    ctx: typer.Context,
    phase_id: int = typer.Argument(..., help="Phase id."),
    step_id: str = typer.Argument(..., help="Step id, e.g. 1A."),
    new_status: Status = typer.Argument(..., metavar="STATUS", help="TODO, IN_PROGRESS or DONE."),
    comment: str | None = typer.Option(None, "--comment", "-m", help="Completion note."),
) -> None:
    """Record a step's status (agents call this when they finish)."""
    state = ctx.obj
    updated = _plan_store(state).mark_step_status(phase_id, step_id, new_status, comment)
    console.print(
        f"Phase {phase_id}, step {updated.id}: {status_badge(updated.status.value)}"
    )


COMMANDS = {
    "launch": launch,
    "step": step,
    "run": run_tasks,
    "status": status,
    "mark-step": mark_step,
}
