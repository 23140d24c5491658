"""Task plan models: phases of steps with monotonic statuses.

The plan is the durable source of truth for progress. It is persisted as
`.phaselauncher/todos.json`; keys this schema does not know about are kept
on every model so that a load/save round trip never drops agent-written data.

Key classes:
- Status: TODO -> IN_PROGRESS -> DONE, shared by steps and phases
- Step: atomic unit of work executed by one agent
- Phase: ordered group of steps gated by the CTO validation cycle
- TaskPlan: the ordered phase sequence
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer


class Status(str, Enum):
    """Lifecycle status of a step or phase."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def can_transition_to(self, target: Status) -> bool:
        """Statuses only move forward; repeating the current status is allowed."""
        return target.rank >= self.rank


_RANKS = {Status.TODO: 0, Status.IN_PROGRESS: 1, Status.DONE: 2}

_STEP_ID_PATTERN = re.compile(r"^(\d*)([A-Za-z]*)(.*)$")


def step_sort_key(step_id: str) -> tuple[int, int, str, str]:
    """Natural order for step ids: 1A < 1B < 1Z < 1AA < 2A."""
    match = _STEP_ID_PATTERN.match(step_id)
    if match is None:
        return (0, 0, "", step_id)
    number, letters, rest = match.groups()
    return (int(number) if number else 0, len(letters), letters.upper(), rest)


def step_label(phase_id: int, index: int) -> str:
    """Build the id of the index-th step (0-based) of a phase: 3A, 3B, ..., 3Z, 3AA."""
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return f"{phase_id}{letters}"


class Step(BaseModel):
    """A single unit of work assigned to one agent.

    Attributes:
        id: Unique within its phase (e.g. '1A')
        name: Short title
        prompt: Full instructions for the agent
        status: Current status
        comment: Completion note written by the agent
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    id: str
    name: str
    prompt: str = ""
    status: Status = Status.TODO
    comment: str = ""


class Phase(BaseModel):
    """An ordered group of steps with an aggregate status and a validation gate.

    A phase is DONE only once all of its steps are DONE and the CTO cycle
    accepted it. The optional bookkeeping fields are written only when set.

    Attributes:
        id: Unique, plan order
        name: Short title
        steps: Steps in authoring order
        status: Aggregate status
        comment: CTO summary
        remediation_of: Id of the phase this remediation phase fixes
        validating_since: Start of the running validation cycle
        halted_reason: Why escalation stopped for this phase
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    id: int
    name: str
    steps: list[Step] = Field(default_factory=list)
    status: Status = Status.TODO
    comment: str = ""
    remediation_of: int | None = None
    validating_since: datetime | None = None
    halted_reason: str | None = None

    @model_serializer(mode="wrap")
    def _drop_unset_bookkeeping(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        for key in ("remediation_of", "validating_since", "halted_reason"):
            if data.get(key) is None:
                data.pop(key, None)
        return data

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: step_sort_key(s.id))

    def step_counts(self) -> dict[Status, int]:
        counts = dict.fromkeys(Status, 0)
        for step in self.steps:
            counts[step.status] += 1
        return counts

    def steps_with_status(self, status: Status) -> list[Step]:
        return [s for s in self.ordered_steps() if s.status is status]

    @property
    def all_steps_done(self) -> bool:
        return all(s.status is Status.DONE for s in self.steps)


class TaskPlan(BaseModel):
    """The ordered phase sequence."""

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    phases: list[Phase] = Field(default_factory=list)

    def get_phase(self, phase_id: int) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def ordered_phases(self) -> list[Phase]:
        return sorted(self.phases, key=lambda p: p.id)

    def next_phase_id(self) -> int:
        return max((p.id for p in self.phases), default=0) + 1

    def open_remediation_of(self, phase_id: int) -> Phase | None:
        """Return the non-DONE remediation phase created for ``phase_id``, if any."""
        for phase in self.ordered_phases():
            if phase.remediation_of == phase_id and phase.status is not Status.DONE:
                return phase
        return None

    def remediation_depth(self, phase: Phase) -> int:
        """Number of remediation links between ``phase`` and its original phase."""
        depth = 0
        seen: set[int] = {phase.id}
        current = phase
        while current.remediation_of is not None:
            parent = self.get_phase(current.remediation_of)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            depth += 1
            current = parent
        return depth

    def remediation_root(self, phase: Phase) -> Phase:
        """The original phase at the start of ``phase``'s remediation chain."""
        seen: set[int] = {phase.id}
        current = phase
        while current.remediation_of is not None:
            parent = self.get_phase(current.remediation_of)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            current = parent
        return current

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


__all__ = [
    "Phase",
    "Status",
    "Step",
    "TaskPlan",
    "step_label",
    "step_sort_key",
]
