"""Worktree State Store: the cached set of worktrees this tool created.

git is the authority on whether a worktree physically exists; this store
only remembers which worktree belongs to which phase and where each one is
in its lifecycle. :meth:`WorktreeLifecycleManager.reconcile` keeps the two
consistent.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from phaselauncher.core.result import DocumentFormatError, WorktreeNotFoundError
from phaselauncher.core.storage import JsonDocument


class WorktreeStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    STALE = "Stale"


class WorktreeRecord(BaseModel):
    """One provisioned worktree.

    Attributes:
        name: Rendered from the naming pattern; also the branch name
        path: Worktree directory
        branch: Branch checked out in the worktree
        phase_id: Phase the worktree was created for
        created_at: Creation time, second resolution
        status: Active, Completed or Stale
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    name: str
    path: Path
    branch: str
    phase_id: int
    created_at: datetime
    status: WorktreeStatus = WorktreeStatus.ACTIVE


class WorktreeState(BaseModel):
    model_config = ConfigDict(extra="allow")

    worktrees: list[WorktreeRecord] = Field(default_factory=list)

    def get(self, name: str) -> WorktreeRecord | None:
        for record in self.worktrees:
            if record.name == name:
                return record
        return None

    def with_status(self, *statuses: WorktreeStatus) -> list[WorktreeRecord]:
        return [r for r in self.worktrees if r.status in statuses]

    def active_for_phase(self, phase_id: int) -> WorktreeRecord | None:
        for record in self.worktrees:
            if record.phase_id == phase_id and record.status is WorktreeStatus.ACTIVE:
                return record
        return None

    def capacity_used(self) -> int:
        """Records counted against max_worktrees (Active + Completed)."""
        return len(self.with_status(WorktreeStatus.ACTIVE, WorktreeStatus.COMPLETED))

    def oldest_completed(self) -> list[WorktreeRecord]:
        """Completed records, oldest first; ties broken by name."""
        return sorted(
            self.with_status(WorktreeStatus.COMPLETED), key=lambda r: (r.created_at, r.name)
        )


def _empty_state() -> dict:
    return {"worktrees": []}


class WorktreeStateStore:
    """Sole writer of worktree records; a missing file means no records."""

    def __init__(self, path: Path, *, lock_timeout: float = 30.0) -> None:
        self._document = JsonDocument(path, default=_empty_state, lock_timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._document.path

    def load(self) -> WorktreeState:
        return self._parse(self._document.read())

    @contextmanager
    def update(self) -> Iterator[WorktreeState]:
        with self._document.transaction() as data:
            state = self._parse(data)
            yield state
            data.clear()
            data.update(state.model_dump(mode="json"))

    def _parse(self, data: dict) -> WorktreeState:
        try:
            return WorktreeState.model_validate(data)
        except ValidationError as exc:
            raise DocumentFormatError(
                f"Invalid worktree state: {exc}", context={"path": str(self.path)}
            ) from exc

    def add(self, record: WorktreeRecord) -> None:
        with self.update() as state:
            state.worktrees.append(record)

    def set_status(self, name: str, status: WorktreeStatus) -> WorktreeRecord:
        with self.update() as state:
            record = state.get(name)
            if record is None:
                raise WorktreeNotFoundError("Unknown worktree", context={"name": name})
            record.status = status
            return record.model_copy()

    def delete(self, name: str) -> bool:
        """Drop a record; returns False when there was nothing to drop."""
        with self.update() as state:
            before = len(state.worktrees)
            state.worktrees = [r for r in state.worktrees if r.name != name]
            return len(state.worktrees) != before


__all__ = [
    "WorktreeRecord",
    "WorktreeState",
    "WorktreeStateStore",
    "WorktreeStatus",
]
