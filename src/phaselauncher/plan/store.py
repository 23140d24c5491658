"""Plan Store: load, query, mutate and persist the task plan.

Every mutating call runs inside a locked read-modify-write transaction and
persists before returning, because each step transition is made by a fresh
process (an agent calling `plaunch mark-step`).
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from pydantic import ValidationError

from phaselauncher.core.console import get_logger
from phaselauncher.core.result import (
    DocumentFormatError,
    InvalidTransitionError,
    PhaseNotFoundError,
    PlanExistsError,
    PlanNotFoundError,
    StepNotFoundError,
)
from phaselauncher.core.storage import JsonDocument, atomic_write_json
from phaselauncher.plan.models import Phase, Status, Step, TaskPlan, step_label

logger = get_logger(__name__)


class DispatchMode(Enum):
    """Scheduling policy for a single invocation."""

    PARALLEL = "parallel"
    STEP_BY_STEP = "step-by-step"


def _missing_plan(path: Path) -> Exception:
    return PlanNotFoundError(
        "No task plan found. Run `plaunch init` first.", context={"path": str(path)}
    )


class PlanStore:
    """Owns the persisted task plan document."""

    def __init__(self, path: Path, *, lock_timeout: float = 30.0) -> None:
        self._document = JsonDocument(path, missing_error=_missing_plan, lock_timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._document.path

    def exists(self) -> bool:
        return self._document.exists()

    # -------------------------------------------------------------------------
    # Load / save
    # -------------------------------------------------------------------------

    def load(self) -> TaskPlan:
        return self._parse(self._document.read())

    def save(self, plan: TaskPlan) -> None:
        self._document.write(plan.to_document())

    def initialize(self) -> TaskPlan:
        """Create an empty plan; refuses to overwrite an existing one."""
        with self._document.locked():
            if self._document.exists():
                raise PlanExistsError(
                    "A task plan already exists; remove it first to start over",
                    context={"path": str(self.path)},
                )
            plan = TaskPlan()
            atomic_write_json(self.path, plan.to_document())
        return plan

    @contextmanager
    def update(self) -> Iterator[TaskPlan]:
        """Yield the plan for mutation; persists it on clean exit, under the lock."""
        with self._document.transaction() as data:
            plan = self._parse(data)
            yield plan
            data.clear()
            data.update(plan.to_document())

    def _parse(self, data: dict) -> TaskPlan:
        try:
            return TaskPlan.model_validate(data)
        except ValidationError as exc:
            raise DocumentFormatError(
                f"Invalid task plan: {exc}", context={"path": str(self.path)}
            ) from exc

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_next_todo_phase(self, plan: TaskPlan | None = None) -> Phase | None:
        """Lowest-id phase that is not DONE, or None when every phase is DONE."""
        plan = plan or self.load()
        for phase in plan.ordered_phases():
            if phase.status is not Status.DONE:
                return phase
        return None

    @staticmethod
    def steps_ready_to_run(phase: Phase, mode: DispatchMode) -> list[Step]:
        todo = phase.steps_with_status(Status.TODO)
        if mode is DispatchMode.STEP_BY_STEP:
            return todo[:1]
        return todo

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def mark_step_status(
        self,
        phase_id: int,
        step_id: str,
        status: Status,
        comment: str | None = None,
    ) -> Step:
        with self.update() as plan:
            phase = plan.get_phase(phase_id)
            step = phase.get_step(step_id) if phase else None
            if step is None:
                raise StepNotFoundError(
                    "Step not found", context={"phase": phase_id, "step": step_id}
                )
            if not step.status.can_transition_to(status):
                raise InvalidTransitionError(
                    f"Cannot move step from {step.status.value} to {status.value}",
                    context={"phase": phase_id, "step": step_id},
                )
            step.status = status
            if comment is not None:
                step.comment = comment
            logger.debug("Step %s/%s -> %s", phase_id, step_id, status.value)
            return step.model_copy()

    def mark_steps_in_progress(self, phase_id: int, step_ids: list[str]) -> list[Step]:
        """Claim TODO steps for dispatch; steps no longer TODO are left out."""
        claimed: list[Step] = []
        with self.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
            for step_id in step_ids:
                step = phase.get_step(step_id)
                if step is None:
                    raise StepNotFoundError(
                        "Step not found", context={"phase": phase_id, "step": step_id}
                    )
                if step.status is Status.TODO:
                    step.status = Status.IN_PROGRESS
                    claimed.append(step.model_copy())
            if claimed and phase.status is Status.TODO:
                phase.status = Status.IN_PROGRESS
        return claimed

    def release_steps(self, phase_id: int, step_ids: list[str]) -> list[str]:
        """Return claimed steps whose agent never started to TODO.

        Only IN_PROGRESS steps are touched. This is the one place a step
        moves backwards; it undoes a claim made by ``mark_steps_in_progress``.
        """
        released: list[str] = []
        with self.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
            for step_id in step_ids:
                step = phase.get_step(step_id)
                if step is not None and step.status is Status.IN_PROGRESS:
                    step.status = Status.TODO
                    released.append(step_id)
        return released

    def mark_phase_status(
        self,
        phase_id: int,
        status: Status,
        comment: str | None = None,
    ) -> Phase:
        with self.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
            if not phase.status.can_transition_to(status):
                raise InvalidTransitionError(
                    f"Cannot move phase from {phase.status.value} to {status.value}",
                    context={"phase": phase_id},
                )
            phase.status = status
            if comment is not None:
                phase.comment = comment
            return phase.model_copy(deep=True)

    def merge_phase(self, finished: Phase) -> Phase:
        """Bring a phase completed in another plan copy (a worktree's) into this plan.

        Step statuses only move forward; steps unknown here are appended.
        """
        with self.update() as plan:
            phase = plan.get_phase(finished.id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": finished.id})
            for incoming in finished.steps:
                step = phase.get_step(incoming.id)
                if step is None:
                    phase.steps.append(incoming.model_copy())
                elif step.status.can_transition_to(incoming.status):
                    step.status = incoming.status
                    step.comment = incoming.comment
            if phase.status.can_transition_to(finished.status):
                phase.status = finished.status
                phase.comment = finished.comment
            phase.validating_since = None
            return phase.model_copy(deep=True)

    def record_escalation(
        self, phase_id: int, comment: str, *, halted_reason: str | None = None
    ) -> Phase:
        """Copy a failed validation's summary (and halt, if any) onto a phase."""
        with self.update() as plan:
            phase = plan.get_phase(phase_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
            phase.comment = comment
            phase.validating_since = None
            if halted_reason:
                phase.halted_reason = halted_reason
            return phase.model_copy(deep=True)

    def renumber_phase(self, old_id: int, new_id: int) -> Phase:
        """Give phase ``old_id`` the id ``new_id``, relabelling its steps."""
        with self.update() as plan:
            phase = plan.get_phase(old_id)
            if phase is None:
                raise PhaseNotFoundError("Phase not found", context={"phase": old_id})
            if old_id != new_id and plan.get_phase(new_id) is not None:
                raise DocumentFormatError(
                    "Phase id already in use", context={"phase": new_id, "path": str(self.path)}
                )
            phase.id = new_id
            for index, step in enumerate(phase.steps):
                step.id = step_label(new_id, index)
            for other in plan.phases:
                if other.remediation_of == old_id:
                    other.remediation_of = new_id
            return phase.model_copy(deep=True)

    def append_phase(self, phase: Phase, *, relabel_steps: bool = False) -> Phase:
        """Append ``phase`` at the end of the plan with id = max existing id + 1.

        With ``relabel_steps`` the step ids are rewritten to match the new
        phase id (``<id>A``, ``<id>B``, ...).
        """
        with self.update() as plan:
            appended = phase.model_copy(update={"id": plan.next_phase_id()}, deep=True)
            if relabel_steps:
                for index, step in enumerate(appended.steps):
                    step.id = step_label(appended.id, index)
            plan.phases.append(appended)
            logger.info("Appended phase %s: %s", appended.id, appended.name)
            return appended.model_copy(deep=True)


__all__ = ["DispatchMode", "PlanStore"]
