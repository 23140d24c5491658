"""Worktree commands: run phases in isolated git worktrees and manage them."""

from __future__ import annotations

import asyncio

import typer
from rich import box
from rich.markup import escape
from rich.table import Table

from phaselauncher.core.console import console, status_badge
from phaselauncher.core.decorators import handle_exceptions
from phaselauncher.dispatch import open_controller
from phaselauncher.plan import DispatchMode
from phaselauncher.worktree import CleanupReport, WorktreeLifecycleManager

app = typer.Typer(help="Run phases in git worktrees and manage the worktrees.")


async def _manager(state) -> WorktreeLifecycleManager:
    return await WorktreeLifecycleManager.open(
        state.project_root, state.config.worktree, lock_timeout=state.config.storage.lock_timeout
    )


def _print_cleanup(report: CleanupReport) -> None:
    for name in report.stale:
        console.print(f"[red]stale[/red] {name}")
    for name in report.removed:
        console.print(f"[green]removed[/green] {name}")
    for name in report.evicted:
        console.print(f"[yellow]evicted[/yellow] {name}")
    for name, error in report.failures.items():
        console.print(f"[red]failed[/red] {name}: {escape(error)}")
    if not (report.stale or report.removed or report.evicted or report.failures):
        console.print("[dim]Nothing to clean up.[/dim]")


@app.command("run")
@handle_exceptions
def run_phase(
    ctx: typer.Context,
    phase_id: int = typer.Argument(..., help="Phase to run."),
    step_by_step: bool = typer.Option(
        False, "--step-by-step", "-s", help="Dispatch one step at a time."
    ),
) -> None:
    """Run a phase in its own worktree (reusing the phase's active worktree)."""
    state = ctx.obj
    state.require_valid_config()
    mode = DispatchMode.STEP_BY_STEP if step_by_step else DispatchMode.PARALLEL

    async def _run():
        controller = await open_controller(state.project_root, state.config)
        return await controller.run_phase_in_worktree(phase_id, mode)

    result = asyncio.run(_run())
    if result.worktree is not None:
        console.print(f"Worktree [cyan]{result.worktree.name}[/cyan] at {result.worktree.path}")
    for request in result.dispatched:
        console.print(f"  [cyan]{request.label}[/cyan] {escape(request.title)}")
    if result.worktree is not None and not result.dispatched:
        console.print("[yellow]No new steps dispatched.[/yellow]")


@app.command("list")
@handle_exceptions
def list_worktrees(ctx: typer.Context) -> None:
    """List worktrees with their phase's step progress."""
    state = ctx.obj
    overviews = asyncio.run(_manager(state)).list_worktrees()
    if not overviews:
        console.print("[dim]No worktrees.[/dim]")
        return

    table = Table(title="Worktrees", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Phase", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("TODO", justify="right")
    table.add_column("In progress", justify="right")
    table.add_column("Done", justify="right")
    table.add_column("Created", no_wrap=True)
    table.add_column("Path", style="dim")

    for item in overviews:
        record = item.record
        phase = f"{record.phase_id}" + (f" {escape(item.phase_name)}" if item.phase_name else "")
        table.add_row(
            record.name,
            phase,
            status_badge(record.status.value),
            str(item.todo),
            str(item.in_progress),
            str(item.done),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(record.path),
        )
    console.print(table)


@app.command("cleanup")
@handle_exceptions
def cleanup(
    ctx: typer.Context,
    stale: bool = typer.Option(False, "--stale", help="Also drop records of vanished worktrees."),
) -> None:
    """Reconcile with git, then apply auto-cleanup and capacity eviction."""
    state = ctx.obj

    async def _run() -> CleanupReport:
        manager = await _manager(state)
        return await manager.cleanup(include_stale=stale)

    report = asyncio.run(_run())
    _print_cleanup(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("reconcile")
@handle_exceptions
def reconcile(ctx: typer.Context) -> None:
    """Mark records whose worktree git no longer knows as Stale."""
    state = ctx.obj

    async def _run() -> list[str]:
        manager = await _manager(state)
        return await manager.reconcile()

    downgraded = asyncio.run(_run())
    if not downgraded:
        console.print("[green]All worktree records match git.[/green]")
    for name in downgraded:
        console.print(f"[red]stale[/red] {name}")


@app.command("remove")
@handle_exceptions
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Worktree name."),
    force: bool = typer.Option(False, "--force", "-f", help="Discard uncommitted changes."),
) -> None:
    """Remove a worktree, its record and (if merged) its branch."""
    state = ctx.obj

    async def _run() -> bool:
        manager = await _manager(state)
        return await manager.remove(name, force=force)

    if asyncio.run(_run()):
        console.print(f"[green]Removed[/green] {name}")
    else:
        console.print(f"[dim]No worktree named {name}.[/dim]")


@app.command("complete")
@handle_exceptions
def complete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Worktree name."),
) -> None:
    """Mark a worktree Completed without removing it."""
    state = ctx.obj
    record = asyncio.run(_manager(state)).complete(name)
    console.print(f"{record.name}: {status_badge(record.status.value)}")


@app.command("sync")
@handle_exceptions
def sync(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Worktree name."),
) -> None:
    """Rebase a worktree's branch onto the base branch."""
    state = ctx.obj

    async def _run() -> None:
        manager = await _manager(state)
        await manager.sync(name)

    asyncio.run(_run())
    console.print(f"[green]Synced[/green] {name} with {state.config.worktree.base_branch}")
