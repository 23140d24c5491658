"""Tests for the phase progression engine and its validation outcome policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from phaselauncher.core.config import CtoConfig, ValidationCommand
from phaselauncher.engine import (
    AllDone,
    AwaitRunning,
    DispatchSteps,
    Halted,
    OutcomeBand,
    PhaseProgressionEngine,
    PhaseState,
    ValidatePhase,
    ValidationReport,
    ValidationRunner,
)
from phaselauncher.plan import DispatchMode, Phase, PlanStore, Status, Step, TaskPlan
from tests.mocks.dispatcher import ScriptedRunner, failing, passing

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingFixer:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    async def fix(self, phase: Phase, report: ValidationReport, cwd: Path) -> None:
        self.calls.append((phase.id, report.failures))


class ExplodingRunner:
    async def run_command(self, tokens, cwd, *, timeout=None, env=None):  # type: ignore[no-untyped-def]
        raise RuntimeError("runner crashed")


def _phase(phase_id: int, *statuses: Status, **fields: object) -> Phase:
    steps = [
        Step(id=f"{phase_id}{chr(ord('A') + i)}", name=f"step {i}", status=status)
        for i, status in enumerate(statuses)
    ]
    return Phase(id=phase_id, name=f"Phase {phase_id}", steps=steps, **fields)


def _build(
    tmp_path: Path,
    phases: list[Phase],
    *,
    commands: tuple[str, ...] = (),
    runner: ScriptedRunner | ExplodingRunner | None = None,
    few_errors_max: int = 5,
    max_remediation_depth: int = 3,
    focus_phase: int | None = None,
) -> tuple[PhaseProgressionEngine, PlanStore, RecordingFixer]:
    store = PlanStore(tmp_path / ".phaselauncher" / "todos.json", lock_timeout=5)
    store.save(TaskPlan(phases=phases))
    config = CtoConfig(
        validation_commands=[ValidationCommand(command=c) for c in commands],
        few_errors_max=few_errors_max,
        max_remediation_depth=max_remediation_depth,
    )
    fixer = RecordingFixer()
    engine = PhaseProgressionEngine(
        store,
        config,
        workdir=tmp_path,
        validator=ValidationRunner(config, runner=runner or ScriptedRunner()),
        fixer=fixer,
        clock=lambda: NOW,
        focus_phase=focus_phase,
    )
    return engine, store, fixer


class TestNextAction:
    def test_dispatches_all_todo_steps_in_parallel(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.TODO, Status.TODO), _phase(2, Status.TODO)])
        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, DispatchSteps)
        assert action.phase.id == 1
        assert [s.id for s in action.steps] == ["1A", "1B"]

    def test_step_by_step_dispatches_one(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.TODO, Status.TODO)])
        action = engine.next_action(DispatchMode.STEP_BY_STEP)
        assert isinstance(action, DispatchSteps)
        assert [s.id for s in action.steps] == ["1A"]

    def test_step_by_step_waits_for_running_step(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.IN_PROGRESS, Status.TODO)])
        action = engine.next_action(DispatchMode.STEP_BY_STEP)
        assert isinstance(action, AwaitRunning)
        assert "1A" in action.reason

    def test_parallel_dispatches_remaining_todo(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.IN_PROGRESS, Status.TODO)])
        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, DispatchSteps)
        assert [s.id for s in action.steps] == ["1B"]

    def test_waits_when_everything_is_running(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.IN_PROGRESS, Status.DONE)])
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AwaitRunning)

    def test_steps_complete_requests_validation(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.DONE, Status.DONE)])
        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, ValidatePhase)
        assert action.phase.id == 1

    def test_all_done(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.DONE, status=Status.DONE)])
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AllDone)

    def test_focus_phase_ignores_earlier_phases(self, tmp_path: Path) -> None:
        engine, store, _ = _build(
            tmp_path, [_phase(1, Status.TODO), _phase(2, Status.TODO)], focus_phase=2
        )
        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, DispatchSteps)
        assert action.phase.id == 2

        store.mark_phase_status(2, Status.DONE)
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AllDone)


class TestClaims:
    def test_live_claim_blocks_second_validator(self, tmp_path: Path) -> None:
        engine, store, _ = _build(
            tmp_path, [_phase(1, Status.DONE, validating_since=NOW - timedelta(minutes=5))]
        )
        plan = store.load()
        assert engine.phase_state(plan, plan.phases[0]) is PhaseState.VALIDATING
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AwaitRunning)

    @pytest.mark.asyncio
    async def test_live_claim_skips_validation(self, tmp_path: Path) -> None:
        engine, _, _ = _build(
            tmp_path, [_phase(1, Status.DONE, validating_since=NOW - timedelta(minutes=5))]
        )
        assert await engine.validate_phase(1) is None

    def test_expired_claim_can_be_retaken(self, tmp_path: Path) -> None:
        engine, store, _ = _build(
            tmp_path, [_phase(1, Status.DONE, validating_since=NOW - timedelta(hours=3))]
        )
        plan = store.load()
        assert engine.phase_state(plan, plan.phases[0]) is PhaseState.STEPS_COMPLETE
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), ValidatePhase)

    @pytest.mark.asyncio
    async def test_claim_released_when_validator_crashes(self, tmp_path: Path) -> None:
        engine, store, _ = _build(
            tmp_path, [_phase(1, Status.DONE)], commands=("make test",), runner=ExplodingRunner()
        )
        with pytest.raises(RuntimeError):
            await engine.validate_phase(1)
        phase = store.load().get_phase(1)
        assert phase.validating_since is None
        assert phase.status is not Status.DONE

    @pytest.mark.asyncio
    async def test_pending_phase_is_not_validated(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.DONE, Status.TODO)])
        assert await engine.validate_phase(1) is None


class TestOutcomePolicy:
    @pytest.mark.asyncio
    async def test_two_steps_without_commands_accepts_phase(self, tmp_path: Path) -> None:
        engine, store, fixer = _build(tmp_path, [_phase(1, Status.TODO, Status.TODO)])
        store.mark_step_status(1, "1A", Status.DONE, "did A")
        store.mark_step_status(1, "1B", Status.DONE, "did B")

        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, ValidatePhase)
        outcome = await engine.validate_phase(action.phase.id)

        assert outcome is not None
        assert outcome.accepted
        assert outcome.report.failures == 0
        assert outcome.band is OutcomeBand.PASS
        assert fixer.calls == []
        phase = store.load().get_phase(1)
        assert phase.status is Status.DONE
        assert phase.comment == "Validation passed: no validation commands configured."
        assert "validating_since" not in phase.model_dump(mode="json")
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AllDone)

    @pytest.mark.asyncio
    async def test_few_failures_fixed_in_place(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(3), passing()]})
        engine, store, fixer = _build(
            tmp_path,
            [_phase(1, Status.DONE, Status.DONE), _phase(2, Status.TODO)],
            commands=("make test",),
            runner=runner,
            few_errors_max=5,
        )

        outcome = await engine.validate_phase(1)

        assert outcome is not None
        assert outcome.band is OutcomeBand.FEW
        assert outcome.accepted and outcome.fixed_in_place
        assert outcome.remediation_phase is None
        assert fixer.calls == [(1, 3)]
        assert len(runner.calls) == 2
        plan = store.load()
        assert [p.id for p in plan.phases] == [1, 2]
        assert plan.get_phase(1).status is Status.DONE
        assert plan.get_phase(1).comment.startswith("Fixed in place by CTO.")

    @pytest.mark.asyncio
    async def test_many_failures_append_remediation_phase(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(3)]})
        engine, store, fixer = _build(
            tmp_path,
            [_phase(1, Status.DONE, Status.DONE), _phase(2, Status.TODO)],
            commands=("make test",),
            runner=runner,
            few_errors_max=2,
        )

        outcome = await engine.validate_phase(1)

        assert outcome is not None
        assert outcome.band is OutcomeBand.MANY
        assert not outcome.accepted
        assert fixer.calls == []
        assert outcome.remediation_phase is not None
        assert outcome.remediation_phase.id == 3

        plan = store.load()
        origin = plan.get_phase(1)
        remediation = plan.get_phase(3)
        assert origin.status is not Status.DONE
        assert origin.comment.startswith("Validation found 3 failure(s)")
        assert remediation.remediation_of == 1
        assert remediation.status is Status.TODO
        assert [s.id for s in remediation.steps] == ["3A"]
        assert "make test" in remediation.steps[0].prompt
        assert engine.phase_state(plan, origin) is PhaseState.REMEDIATION_PENDING

        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, DispatchSteps)
        assert action.phase.id == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("failures", "band"), [(5, OutcomeBand.FEW), (6, OutcomeBand.MANY)])
    async def test_threshold_boundary(
        self, tmp_path: Path, failures: int, band: OutcomeBand
    ) -> None:
        runner = ScriptedRunner({"make test": [failing(failures), passing()]})
        engine, _, fixer = _build(
            tmp_path, [_phase(1, Status.DONE)], commands=("make test",), runner=runner
        )
        outcome = await engine.validate_phase(1)
        assert outcome is not None
        assert outcome.band is band
        assert outcome.accepted is (band is OutcomeBand.FEW)
        assert len(fixer.calls) == (1 if band is OutcomeBand.FEW else 0)

    @pytest.mark.asyncio
    async def test_fix_pass_runs_once_then_escalates(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(2)]})
        engine, store, fixer = _build(
            tmp_path, [_phase(1, Status.DONE)], commands=("make test",), runner=runner
        )

        outcome = await engine.validate_phase(1)

        assert outcome is not None
        assert outcome.band is OutcomeBand.FEW
        assert not outcome.accepted
        assert len(fixer.calls) == 1
        assert len(outcome.reports) == 2
        assert len(runner.calls) == 2
        assert outcome.remediation_phase is not None
        assert store.load().get_phase(1).status is not Status.DONE

    @pytest.mark.asyncio
    async def test_multiple_failed_commands_get_one_step_each(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make build": [failing(4)], "make test": [failing(4)]})
        engine, store, _ = _build(
            tmp_path,
            [_phase(1, Status.DONE)],
            commands=("make build", "make lint", "make test"),
            runner=runner,
        )
        outcome = await engine.validate_phase(1)
        assert outcome is not None
        assert outcome.report.failures == 8
        remediation = store.load().get_phase(2)
        assert [s.id for s in remediation.steps] == ["2A", "2B"]
        assert remediation.name == "Remediation for phase 1: Phase 1"

    @pytest.mark.asyncio
    async def test_remediation_limit_halts(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(10)]})
        engine, store, _ = _build(
            tmp_path,
            [_phase(1, Status.DONE)],
            commands=("make test",),
            runner=runner,
            max_remediation_depth=0,
        )

        outcome = await engine.validate_phase(1)

        assert outcome is not None
        assert outcome.halted_reason is not None
        assert outcome.remediation_phase is None
        plan = store.load()
        assert len(plan.phases) == 1
        assert plan.get_phase(1).halted_reason == outcome.halted_reason
        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, Halted)
        assert action.phase.id == 1

    @pytest.mark.asyncio
    async def test_remediation_chain_is_bounded(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(10)]})
        engine, store, _ = _build(
            tmp_path,
            [_phase(1, Status.DONE)],
            commands=("make test",),
            runner=runner,
            max_remediation_depth=1,
        )

        first = await engine.validate_phase(1)
        assert first is not None and first.remediation_phase is not None
        store.mark_step_status(2, "2A", Status.DONE)

        action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, ValidatePhase)
        assert action.phase.id == 2
        second = await engine.validate_phase(2)

        assert second is not None
        assert second.halted_reason is not None
        assert len(store.load().phases) == 2
        halted = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(halted, Halted)
        assert halted.phase.id == 2

    @pytest.mark.asyncio
    async def test_origin_revalidated_after_remediation(self, tmp_path: Path) -> None:
        runner = ScriptedRunner({"make test": [failing(10), passing()]})
        engine, store, _ = _build(
            tmp_path, [_phase(1, Status.DONE)], commands=("make test",), runner=runner
        )

        await engine.validate_phase(1)
        store.mark_step_status(2, "2A", Status.DONE, "fixed")

        remediation_action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(remediation_action, ValidatePhase)
        assert remediation_action.phase.id == 2
        remediation_outcome = await engine.validate_phase(2)
        assert remediation_outcome is not None and remediation_outcome.accepted

        origin_action = engine.next_action(DispatchMode.PARALLEL)
        assert isinstance(origin_action, ValidatePhase)
        assert origin_action.phase.id == 1
        origin_outcome = await engine.validate_phase(1)
        assert origin_outcome is not None and origin_outcome.accepted

        plan = store.load()
        assert all(p.status is Status.DONE for p in plan.phases)
        assert isinstance(engine.next_action(DispatchMode.PARALLEL), AllDone)

    @pytest.mark.asyncio
    async def test_accepted_callbacks_fire(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.DONE)])
        accepted: list[int] = []
        engine.add_accepted_callback(lambda phase: accepted.append(phase.id))
        await engine.validate_phase(1)
        assert accepted == [1]

    @pytest.mark.asyncio
    async def test_escalated_callbacks_fire_for_remediation_and_halt(
        self, tmp_path: Path
    ) -> None:
        runner = ScriptedRunner({"make test": [failing(4)]})
        engine, _, _ = _build(
            tmp_path,
            [_phase(1, Status.DONE)],
            commands=("make test",),
            runner=runner,
            few_errors_max=0,
            max_remediation_depth=1,
        )
        escalated: list[tuple[int, int | None, str | None]] = []
        engine.add_escalated_callback(
            lambda outcome: escalated.append(
                (
                    outcome.phase_id,
                    outcome.remediation_phase.id if outcome.remediation_phase else None,
                    outcome.halted_reason,
                )
            )
        )

        await engine.validate_phase(1)
        engine.store.mark_step_status(2, "2A", Status.DONE)
        await engine.validate_phase(2)

        assert escalated[0] == (1, 2, None)
        assert escalated[1][:2] == (2, None)
        assert escalated[1][2] is not None

    @pytest.mark.asyncio
    async def test_fork_shares_policy(self, tmp_path: Path) -> None:
        engine, _, _ = _build(tmp_path, [_phase(1, Status.TODO)])
        other_root = tmp_path / "other"
        other_store = PlanStore(other_root / ".phaselauncher" / "todos.json")
        other_store.save(TaskPlan(phases=[_phase(1, Status.DONE), _phase(2, Status.DONE)]))

        forked = engine.fork(other_store, other_root, focus_phase=2)

        assert forked.workdir == other_root
        action = forked.next_action(DispatchMode.PARALLEL)
        assert isinstance(action, ValidatePhase)
        assert action.phase.id == 2
