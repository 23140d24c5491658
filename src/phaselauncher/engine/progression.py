"""Phase Progression Engine: decides the next unit of work and runs the CTO gate.

Per-phase states are derived from the persisted plan on every call rather
than stored, so a fresh process re-invoked by an agent sees exactly what the
previous one left behind::

    PENDING --all steps DONE--> STEPS_COMPLETE --claim--> VALIDATING
    VALIDATING --0 failures / fixed in place--> ACCEPTED (phase DONE)
    VALIDATING --too many failures--> REMEDIATION_PENDING (new phase appended)
    REMEDIATION_PENDING --remediation DONE--> STEPS_COMPLETE (validated again)
    VALIDATING --remediation limit reached--> HALTED
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from phaselauncher.core.config import CtoConfig
from phaselauncher.core.console import get_logger
from phaselauncher.core.result import PhaseNotFoundError
from phaselauncher.engine.validation import (
    CommandOutcome,
    OutcomeBand,
    ValidationReport,
    ValidationRunner,
)
from phaselauncher.plan import DispatchMode, Phase, PlanStore, Status, Step, TaskPlan, step_label

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now().astimezone().replace(microsecond=0)


class PhaseState(Enum):
    PENDING = "pending"
    STEPS_COMPLETE = "steps_complete"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    REMEDIATION_PENDING = "remediation_pending"
    HALTED = "halted"


# -----------------------------------------------------------------------------
# Next actions
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DispatchSteps:
    phase: Phase
    steps: list[Step]


@dataclass(frozen=True)
class ValidatePhase:
    phase: Phase


@dataclass(frozen=True)
class AwaitRunning:
    phase: Phase
    reason: str


@dataclass(frozen=True)
class Halted:
    phase: Phase
    reason: str


@dataclass(frozen=True)
class AllDone:
    pass


NextAction = DispatchSteps | ValidatePhase | AwaitRunning | Halted | AllDone


# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------


class PhaseFixer(Protocol):
    """Applies in-place fixes for a few validation failures (the CTO agent)."""

    async def fix(self, phase: Phase, report: ValidationReport, cwd: Path) -> None: ...


AcceptedCallback = Callable[[Phase], None]


@dataclass
class ValidationOutcome:
    """What one validation cycle decided for a phase.

    Attributes:
        phase_id: Validated phase
        band: Band of the first validation run
        report: Report of the last validation run
        accepted: Whether the phase became DONE
        fixed_in_place: Accepted after the CTO fix pass
        remediation_phase: Phase appended for the remaining failures
        halted_reason: Set when the remediation limit stopped escalation
        reports: Every validation run of the cycle, first to last
    """

    phase_id: int
    band: OutcomeBand
    report: ValidationReport
    accepted: bool = False
    fixed_in_place: bool = False
    remediation_phase: Phase | None = None
    halted_reason: str | None = None
    reports: list[ValidationReport] = field(default_factory=list)


EscalatedCallback = Callable[[ValidationOutcome], None]


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------


class PhaseProgressionEngine:
    """Selects work from the plan and applies the validation outcome policy."""

    def __init__(
        self,
        store: PlanStore,
        config: CtoConfig,
        *,
        workdir: Path,
        validator: ValidationRunner | None = None,
        fixer: PhaseFixer | None = None,
        clock: Callable[[], datetime] = _now,
        focus_phase: int | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._workdir = workdir
        self._validator = validator or ValidationRunner(config)
        self._fixer = fixer
        self._clock = clock
        self._focus_phase = focus_phase
        self._accepted_callbacks: list[AcceptedCallback] = []
        self._escalated_callbacks: list[EscalatedCallback] = []

    @property
    def store(self) -> PlanStore:
        return self._store

    @property
    def workdir(self) -> Path:
        return self._workdir

    @property
    def focus_phase(self) -> int | None:
        return self._focus_phase

    def fork(self, store: PlanStore, workdir: Path, *, focus_phase: int | None) -> PhaseProgressionEngine:
        """Same policy and collaborators over another plan copy, e.g. a worktree's."""
        return PhaseProgressionEngine(
            store,
            self._config,
            workdir=workdir,
            validator=self._validator,
            fixer=self._fixer,
            clock=self._clock,
            focus_phase=focus_phase,
        )

    def set_fixer(self, fixer: PhaseFixer | None) -> None:
        self._fixer = fixer

    def add_accepted_callback(self, callback: AcceptedCallback) -> None:
        self._accepted_callbacks.append(callback)

    def add_escalated_callback(self, callback: EscalatedCallback) -> None:
        """Run ``callback`` after a failed validation appended remediation or halted."""
        self._escalated_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # State derivation
    # -------------------------------------------------------------------------

    def phase_state(self, plan: TaskPlan, phase: Phase, now: datetime | None = None) -> PhaseState:
        if phase.status is Status.DONE:
            return PhaseState.ACCEPTED
        if phase.halted_reason:
            return PhaseState.HALTED
        if plan.open_remediation_of(phase.id) is not None:
            return PhaseState.REMEDIATION_PENDING
        if not phase.all_steps_done:
            return PhaseState.PENDING
        if self._claim_is_live(phase, now or self._clock()):
            return PhaseState.VALIDATING
        return PhaseState.STEPS_COMPLETE

    def _claim_is_live(self, phase: Phase, now: datetime) -> bool:
        since = phase.validating_since
        if since is None:
            return False
        if since.tzinfo is None:
            since = since.astimezone()
        return (now - since).total_seconds() < self._config.validation_timeout

    def next_action(self, mode: DispatchMode, plan: TaskPlan | None = None) -> NextAction:
        plan = plan or self._store.load()
        if self._focus_phase is not None:
            phase = plan.get_phase(self._focus_phase)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": self._focus_phase})
            if phase.status is Status.DONE:
                return AllDone()
        else:
            phase = self._store.find_next_todo_phase(plan)
        if phase is None:
            return AllDone()
        return self._action_for(plan, phase, mode, visited=set())

    def _action_for(
        self, plan: TaskPlan, phase: Phase, mode: DispatchMode, visited: set[int]
    ) -> NextAction:
        visited.add(phase.id)
        match self.phase_state(plan, phase):
            case PhaseState.HALTED:
                return Halted(phase, phase.halted_reason or "halted")
            case PhaseState.REMEDIATION_PENDING:
                remediation = plan.open_remediation_of(phase.id)
                if remediation is None:
                    raise PhaseNotFoundError(
                        "Remediation phase not found", context={"phase": phase.id}
                    )
                if remediation.id in visited:
                    return Halted(phase, f"Remediation cycle through phase {remediation.id}")
                return self._action_for(plan, remediation, mode, visited)
            case PhaseState.PENDING:
                running = phase.steps_with_status(Status.IN_PROGRESS)
                if mode is DispatchMode.STEP_BY_STEP and running:
                    return AwaitRunning(phase, f"step {running[0].id} is in progress")
                ready = self._store.steps_ready_to_run(phase, mode)
                if ready:
                    return DispatchSteps(phase, ready)
                return AwaitRunning(phase, f"{len(running)} step(s) in progress")
            case PhaseState.VALIDATING:
                return AwaitRunning(phase, "validation is running in another process")
            case PhaseState.STEPS_COMPLETE:
                return ValidatePhase(phase)
            case PhaseState.ACCEPTED:
                # Only reachable for a phase completed while the plan was read.
                return self.next_action(mode)

    # -------------------------------------------------------------------------
    # Validation cycle
    # -------------------------------------------------------------------------

    async def validate_phase(self, phase_id: int) -> ValidationOutcome | None:
        """Run the CTO cycle for a phase whose steps are all DONE.

        Returns None when the phase cannot be claimed (not STEPS_COMPLETE, or
        another process already validating it).
        """
        phase = self._claim(phase_id)
        if phase is None:
            logger.info("Phase %s is not ready for validation; skipping", phase_id)
            return None

        try:
            report = await self._validator.run(self._workdir)
            outcome = ValidationOutcome(
                phase_id=phase_id,
                band=report.band(self._config.few_errors_max),
                report=report,
                reports=[report],
            )
            band = outcome.band

            if band is OutcomeBand.FEW:
                logger.info(
                    "Phase %s: %d failure(s), attempting in-place fix", phase_id, report.failures
                )
                if self._fixer is not None:
                    await self._fixer.fix(phase, report, self._workdir)
                report = await self._validator.run(self._workdir)
                outcome.report = report
                outcome.reports.append(report)
                if report.failures == 0:
                    band = OutcomeBand.PASS
                    outcome.fixed_in_place = True
                else:
                    band = OutcomeBand.MANY

            if band is OutcomeBand.PASS:
                self._accept(outcome)
            else:
                self._escalate(outcome)
        except Exception:
            self._release_claim(phase_id)
            raise

        return outcome

    def _claim(self, phase_id: int) -> Phase | None:
        now = self._clock()
        with self._store.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
            if self.phase_state(plan, phase, now) is not PhaseState.STEPS_COMPLETE:
                return None
            phase.validating_since = now
            if phase.status is Status.TODO:
                phase.status = Status.IN_PROGRESS
            logger.info("Validating phase %s: %s", phase.id, phase.name)
            return phase.model_copy(deep=True)

    def _release_claim(self, phase_id: int) -> None:
        with self._store.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is not None:
                phase.validating_since = None

    def _accept(self, outcome: ValidationOutcome) -> None:
        summary = outcome.report.summary()
        if outcome.fixed_in_place:
            summary = f"Fixed in place by CTO. {summary}"

        with self._store.update() as plan:
            phase = plan.get_phase(outcome.phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": outcome.phase_id})
            phase.validating_since = None
            if not phase.all_steps_done:
                logger.warning("Phase %s gained unfinished steps during validation", phase.id)
                return
            phase.status = Status.DONE
            phase.comment = summary
            accepted = phase.model_copy(deep=True)

        outcome.accepted = True
        logger.info("Phase %s accepted: %s", accepted.id, summary)
        for callback in self._accepted_callbacks:
            callback(accepted)

    def _escalate(self, outcome: ValidationOutcome) -> None:
        report = outcome.report
        limit = self._config.max_remediation_depth

        with self._store.update() as plan:
            phase = plan.get_phase(outcome.phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": outcome.phase_id})
            phase.validating_since = None
            phase.comment = report.summary()

            if self.remediation_attempts(plan, phase) >= limit:
                phase.halted_reason = (
                    f"Remediation limit of {limit} reached with {report.failures} failure(s)"
                )
                outcome.halted_reason = phase.halted_reason
            else:
                remediation = build_remediation_phase(plan.next_phase_id(), phase, report.failed)
                plan.phases.append(remediation)
                outcome.remediation_phase = remediation.model_copy(deep=True)

        if outcome.halted_reason:
            logger.error("Phase %s halted: %s", outcome.phase_id, outcome.halted_reason)
        elif outcome.remediation_phase is not None:
            logger.warning(
                "Phase %s: %d failure(s); appended remediation phase %s",
                outcome.phase_id,
                report.failures,
                outcome.remediation_phase.id,
            )
        for callback in self._escalated_callbacks:
            callback(outcome)

    @staticmethod
    def remediation_attempts(plan: TaskPlan, phase: Phase) -> int:
        """Remediation phases already spawned by ``phase`` plus its own chain depth."""
        spawned = sum(1 for p in plan.phases if p.remediation_of == phase.id)
        return spawned + plan.remediation_depth(phase)


def _remediation_prompt(outcome: CommandOutcome) -> str:
    lines = [
        f"The validation command `{outcome.command.command}` failed "
        f"with {outcome.error_count} error(s).",
    ]
    if outcome.command.description:
        lines.append(f"Purpose: {outcome.command.description}")
    if outcome.returncode is not None:
        lines.append(f"Exit code: {outcome.returncode}")
    if outcome.output:
        lines.extend(["", "Output:", outcome.output.rstrip()])
    lines.extend(["", "Fix the underlying problems so that the command passes."])
    return "\n".join(lines)


def build_remediation_phase(
    phase_id: int, origin: Phase, failed: list[CommandOutcome]
) -> Phase:
    """A TODO phase with one fix step per failing validation command."""
    steps = [
        Step(
            id=step_label(phase_id, index),
            name=f"Fix: {outcome.label}",
            prompt=_remediation_prompt(outcome),
        )
        for index, outcome in enumerate(failed)
    ]
    return Phase(
        id=phase_id,
        name=f"Remediation for phase {origin.id}: {origin.name}",
        steps=steps,
        remediation_of=origin.id,
    )


__all__ = [
    "AcceptedCallback",
    "AllDone",
    "AwaitRunning",
    "DispatchSteps",
    "EscalatedCallback",
    "Halted",
    "NextAction",
    "PhaseFixer",
    "PhaseProgressionEngine",
    "PhaseState",
    "ValidatePhase",
    "ValidationOutcome",
    "build_remediation_phase",
]
