"""End-to-end: phases dispatched into worktrees and merged back on acceptance."""

from __future__ import annotations

from pathlib import Path

import pytest

from phaselauncher.core.config import (
    CtoConfig,
    LauncherConfig,
    ProjectPaths,
    ValidationCommand,
    WorktreeConfig,
)
from phaselauncher.dispatch import open_controller
from phaselauncher.engine import AllDone, AwaitRunning, DispatchSteps, Halted
from phaselauncher.plan import DispatchMode, Phase, PlanStore, Status, Step, TaskPlan
from phaselauncher.worktree import WorktreeStatus
from tests.mocks.dispatcher import RecordingDispatcher


@pytest.fixture
def config(tmp_path: Path) -> LauncherConfig:
    return LauncherConfig(worktree=WorktreeConfig(enabled=True, root=tmp_path / "worktrees"))


@pytest.fixture
def main_store(git_repo: Path) -> PlanStore:
    store = PlanStore(ProjectPaths(git_repo).plan_file)
    store.save(
        TaskPlan(
            phases=[
                Phase(id=1, name="Setup", steps=[Step(id="1A", name="a"), Step(id="1B", name="b")]),
                Phase(id=2, name="Features", steps=[Step(id="2A", name="a")]),
            ]
        )
    )
    return store


@pytest.mark.asyncio
async def test_phase_runs_in_worktree_and_merges_back(
    git_repo: Path, main_store: PlanStore, config: LauncherConfig
) -> None:
    dispatcher = RecordingDispatcher()
    controller = await open_controller(git_repo, config, dispatcher=dispatcher)
    assert controller.use_worktrees

    # Main repository: phase 1 goes to a fresh worktree
    first = await controller.advance(DispatchMode.PARALLEL)
    record = first.worktree
    assert record is not None
    assert record.phase_id == 1
    assert isinstance(first.action, DispatchSteps)
    assert dispatcher.labels == ["phase-1-step-1A", "phase-1-step-1B"]
    assert all(r.cwd == record.path for r in dispatcher.launched)

    worktree_store = PlanStore(ProjectPaths(record.path).plan_file)
    assert all(
        s.status is Status.IN_PROGRESS for s in worktree_store.load().get_phase(1).steps
    )
    main_phase = main_store.load().get_phase(1)
    assert main_phase.status is Status.IN_PROGRESS
    assert all(s.status is Status.TODO for s in main_phase.steps)

    # Re-invoking from the main repository reuses the worktree and waits
    again = await controller.advance(DispatchMode.PARALLEL)
    assert again.worktree is not None and again.worktree.name == record.name
    assert isinstance(again.action, AwaitRunning)
    assert len(dispatcher.launched) == 2
    assert len(controller.worktrees.state_store.load().worktrees) == 1

    # Agents finish their steps inside the worktree and re-invoke there
    worktree_store.mark_step_status(1, "1A", Status.DONE, "did a")
    worktree_store.mark_step_status(1, "1B", Status.DONE, "did b")
    inner = await open_controller(record.path, config, dispatcher=dispatcher)
    assert inner.engine.focus_phase == 1
    assert not inner.use_worktrees

    finished = await inner.advance(DispatchMode.PARALLEL)

    assert [o.accepted for o in finished.validations] == [True]
    assert isinstance(finished.action, AllDone)
    merged = main_store.load().get_phase(1)
    assert merged.status is Status.DONE
    assert [s.comment for s in merged.ordered_steps()] == ["did a", "did b"]
    state = controller.worktrees.state_store.load()
    assert state.get(record.name).status is WorktreeStatus.COMPLETED

    # Back in the main repository the next phase gets its own worktree
    nxt = await controller.advance(DispatchMode.PARALLEL)
    assert nxt.worktree is not None
    assert nxt.worktree.phase_id == 2
    assert nxt.worktree.name != record.name
    assert dispatcher.labels[-1] == "phase-2-step-2A"


@pytest.mark.asyncio
async def test_worktree_run_command_for_explicit_phase(
    git_repo: Path, main_store: PlanStore, config: LauncherConfig
) -> None:
    dispatcher = RecordingDispatcher()
    controller = await open_controller(git_repo, config, dispatcher=dispatcher)

    result = await controller.run_phase_in_worktree(2, DispatchMode.STEP_BY_STEP)

    assert result.worktree is not None and result.worktree.phase_id == 2
    assert dispatcher.labels == ["phase-2-step-2A"]
    assert main_store.load().get_phase(1).status is Status.TODO


@pytest.mark.asyncio
async def test_worktrees_disabled_dispatches_in_place(
    git_repo: Path, main_store: PlanStore
) -> None:
    dispatcher = RecordingDispatcher()
    controller = await open_controller(git_repo, LauncherConfig(), dispatcher=dispatcher)

    result = await controller.advance(DispatchMode.PARALLEL)

    assert result.worktree is None
    assert all(r.cwd == git_repo.resolve() for r in dispatcher.launched)
    assert controller.worktrees is not None
    assert controller.worktrees.state_store.load().worktrees == []


def _failing_config(tmp_path: Path, *, max_remediation_depth: int = 3) -> LauncherConfig:
    return LauncherConfig(
        worktree=WorktreeConfig(enabled=True, root=tmp_path / "worktrees"),
        cto=CtoConfig(
            validation_commands=[ValidationCommand(command="false", description="gate")],
            few_errors_max=0,
            max_remediation_depth=max_remediation_depth,
        ),
    )


async def _finish_in_worktree(
    git_repo: Path, config: LauncherConfig, dispatcher: RecordingDispatcher
):  # type: ignore[no-untyped-def]
    controller = await open_controller(git_repo, config, dispatcher=dispatcher)
    record = (await controller.advance(DispatchMode.PARALLEL)).worktree
    assert record is not None
    worktree_store = PlanStore(ProjectPaths(record.path).plan_file)
    worktree_store.mark_step_status(1, "1A", Status.DONE)
    worktree_store.mark_step_status(1, "1B", Status.DONE)
    return controller, record, worktree_store


@pytest.mark.asyncio
async def test_worktree_remediation_reaches_main_plan(
    git_repo: Path, main_store: PlanStore, tmp_path: Path
) -> None:
    config = _failing_config(tmp_path)
    dispatcher = RecordingDispatcher()
    controller, record, worktree_store = await _finish_in_worktree(git_repo, config, dispatcher)
    # A phase added to the main plan after the worktree was created takes id 3
    main_store.append_phase(
        Phase(id=0, name="Late", steps=[Step(id="x", name="x")]), relabel_steps=True
    )

    inner = await open_controller(record.path, config, dispatcher=dispatcher)
    result = await inner.advance(DispatchMode.PARALLEL)

    assert result.validations[0].remediation_phase is not None
    assert result.validations[0].remediation_phase.id == 4
    assert isinstance(result.action, DispatchSteps)
    assert dispatcher.labels[-1] == "phase-4-step-4A"

    main_plan = main_store.load()
    mirrored = main_plan.get_phase(4)
    assert mirrored is not None
    assert mirrored.remediation_of == 1
    assert [s.id for s in mirrored.steps] == ["4A"]
    assert main_plan.get_phase(1).comment == "Validation found 1 failure(s): gate (1)"
    worktree_plan = worktree_store.load()
    assert worktree_plan.get_phase(3) is None
    assert worktree_plan.get_phase(4).remediation_of == 1

    # From the main repository the remediation is followed into the same worktree
    again = await controller.advance(DispatchMode.PARALLEL)
    assert again.worktree is not None and again.worktree.name == record.name
    assert isinstance(again.action, AwaitRunning)
    assert len(controller.worktrees.state_store.load().worktrees) == 1

    # Accepting the remediation in the worktree marks it DONE in the main plan
    healthy = LauncherConfig(worktree=config.worktree)
    worktree_store.mark_step_status(4, "4A", Status.DONE, "fixed")
    inner = await open_controller(record.path, healthy, dispatcher=dispatcher)
    finished = await inner.advance(DispatchMode.PARALLEL)

    assert [o.phase_id for o in finished.validations] == [4, 1]
    main_plan = main_store.load()
    assert main_plan.get_phase(4).status is Status.DONE
    assert main_plan.get_phase(1).status is Status.DONE


@pytest.mark.asyncio
async def test_worktree_halt_reaches_main_plan(
    git_repo: Path, main_store: PlanStore, tmp_path: Path
) -> None:
    config = _failing_config(tmp_path, max_remediation_depth=0)
    dispatcher = RecordingDispatcher()
    controller, record, _ = await _finish_in_worktree(git_repo, config, dispatcher)

    inner = await open_controller(record.path, config, dispatcher=dispatcher)
    result = await inner.advance(DispatchMode.PARALLEL)

    reason = "Remediation limit of 0 reached with 1 failure(s)"
    assert result.validations[0].halted_reason == reason
    assert isinstance(result.action, Halted)
    assert main_store.load().get_phase(1).halted_reason == reason

    back = await controller.advance(DispatchMode.PARALLEL)
    assert isinstance(back.action, Halted)
    assert back.worktree is None
    assert len(dispatcher.launched) == 2
