"""Git worktree lifecycle management for phase isolation."""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from phaselauncher.core.config import LAUNCHER_DIRNAME, ProjectPaths, WorktreeConfig
from phaselauncher.core.console import get_logger
from phaselauncher.core.result import (
    BaseBranchMissingError,
    Err,
    GitError,
    Ok,
    PlanNotFoundError,
    WorktreeAlreadyExistsError,
    WorktreeCapacityExceededError,
    WorktreeCreationFailed,
    WorktreeDirtyError,
    WorktreeNameCollisionError,
    WorktreeNotFoundError,
    WorktreeSyncError,
)
from phaselauncher.git import AsyncRepo
from phaselauncher.plan import PlanStore, Status, TaskPlan
from phaselauncher.worktree.state import WorktreeRecord, WorktreeStateStore, WorktreeStatus

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def _now() -> datetime:
    return datetime.now().astimezone().replace(microsecond=0)


def render_worktree_name(pattern: str, phase_id: int, moment: datetime) -> str:
    """Substitute ``{id}`` and ``{timestamp}`` in a naming pattern."""
    return pattern.replace("{id}", str(phase_id)).replace(
        "{timestamp}", moment.strftime(TIMESTAMP_FORMAT)
    )


def _load_plan(store: PlanStore) -> TaskPlan | None:
    try:
        return store.load()
    except PlanNotFoundError:
        return None


@dataclass
class CleanupReport:
    """Outcome of a cleanup pass; failures are keyed by worktree name."""

    stale: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class WorktreeOverview:
    """A worktree record merged with its phase's step counts."""

    record: WorktreeRecord
    phase_name: str | None
    todo: int
    in_progress: int
    done: int


class WorktreeLifecycleManager:
    """Creates, tracks, reconciles and evicts per-phase git worktrees.

    git is the source of truth for which worktrees exist; the state store is
    a cache of the ones this tool created. At most one Active worktree exists
    per phase, and Active worktrees are never evicted to make room.

    Attributes:
        repo: The main repository
        config: Worktree settings for this run
        worktree_root: Directory where worktrees are created
    """

    def __init__(
        self,
        repo: AsyncRepo,
        config: WorktreeConfig,
        state_store: WorktreeStateStore,
        *,
        plan_store: PlanStore | None = None,
        worktree_root: Path | None = None,
        clock: Callable[[], datetime] = _now,
        retry_delay: float = 1.0,
        max_name_attempts: int = 3,
    ) -> None:
        self._repo = repo
        self._config = config
        self._state = state_store
        self._plan_store = plan_store
        self._worktree_root = worktree_root or config.root or repo.path.parent
        self._clock = clock
        self._retry_delay = retry_delay
        self._max_name_attempts = max_name_attempts

    @classmethod
    async def open(
        cls,
        path: Path,
        config: WorktreeConfig,
        *,
        lock_timeout: float = 30.0,
    ) -> WorktreeLifecycleManager:
        """Build a manager for the main repository that contains ``path``.

        Linked worktrees share the main repository's state file, so the
        manager behaves the same whichever working copy it is opened from.
        """
        match await AsyncRepo.open(path):
            case Ok(repo):
                pass
            case Err(err):
                raise err
        match await repo.main_root():
            case Ok(main_root):
                pass
            case Err(err):
                raise err

        paths = ProjectPaths(main_root)
        return cls(
            AsyncRepo(main_root),
            config,
            WorktreeStateStore(paths.worktree_state_file, lock_timeout=lock_timeout),
            plan_store=PlanStore(paths.plan_file, lock_timeout=lock_timeout),
        )

    @property
    def worktree_root(self) -> Path:
        return self._worktree_root

    @property
    def state_store(self) -> WorktreeStateStore:
        return self._state

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create(self, phase_id: int) -> WorktreeRecord:
        """Provision an isolated worktree for ``phase_id``.

        Raises:
            BaseBranchMissingError: The base branch does not resolve
            WorktreeNameCollisionError: No free name within max_name_attempts
            WorktreeAlreadyExistsError: The phase already has an Active worktree
            WorktreeCapacityExceededError: Active worktrees alone fill max_worktrees
            WorktreeCreationFailed: git refused to create the worktree
        """
        base = self._config.base_branch
        if not await self._repo.ref_exists(base):
            raise BaseBranchMissingError(
                f"Base branch '{base}' does not exist", context={"repo": str(self._repo.path)}
            )

        name, moment = await self._reserve_name(phase_id)

        existing = self._state.load().active_for_phase(phase_id)
        if existing is not None:
            raise WorktreeAlreadyExistsError(
                f"Phase {phase_id} already has an active worktree",
                context={"name": existing.name, "path": str(existing.path)},
            )

        await self._make_room()

        await asyncio.to_thread(self._worktree_root.mkdir, parents=True, exist_ok=True)
        target = self._worktree_root / name
        match await self._repo.add_worktree(target, name, base):
            case Ok(created_path):
                pass
            case Err(err):
                raise WorktreeCreationFailed(
                    f"git worktree add failed: {err.message}",
                    context={"name": name, "path": str(target)},
                )

        record = WorktreeRecord(
            name=name,
            path=created_path,
            branch=name,
            phase_id=phase_id,
            created_at=moment,
            status=WorktreeStatus.ACTIVE,
        )
        with self._state.update() as state:
            raced = state.active_for_phase(phase_id)
            if raced is None:
                state.worktrees.append(record)
        if raced is not None:
            # Another process registered a worktree for this phase meanwhile.
            await self._repo.remove_worktree(created_path)
            await self._repo.delete_branch(name, force=True)
            raise WorktreeAlreadyExistsError(
                f"Phase {phase_id} already has an active worktree",
                context={"name": raced.name, "path": str(raced.path)},
            )

        await asyncio.to_thread(self._copy_snapshot, created_path)
        logger.info("Created worktree %s for phase %s at %s", name, phase_id, created_path)
        return record

    async def _reserve_name(self, phase_id: int) -> tuple[str, datetime]:
        for attempt in range(1, self._max_name_attempts + 1):
            moment = self._clock()
            name = render_worktree_name(self._config.naming_pattern, phase_id, moment)
            if not await self._name_taken(name):
                return name, moment
            logger.debug("Worktree name %s taken (attempt %d)", name, attempt)
            if attempt < self._max_name_attempts:
                await asyncio.sleep(self._retry_delay)
        raise WorktreeNameCollisionError(
            "Could not render an unused worktree name",
            context={"pattern": self._config.naming_pattern, "attempts": self._max_name_attempts},
        )

    async def _name_taken(self, name: str) -> bool:
        if self._state.load().get(name) is not None:
            return True
        if (self._worktree_root / name).exists():
            return True
        return await self._repo.branch_exists(name)

    async def _make_room(self) -> None:
        """Evict the oldest Completed worktrees until one more fits."""
        limit = self._config.max_worktrees
        state = self._state.load()
        if state.capacity_used() < limit:
            return

        for record in state.oldest_completed():
            try:
                await self.remove(record.name, force=False)
            except (WorktreeDirtyError, GitError) as exc:
                logger.warning("Cannot evict worktree %s: %s", record.name, exc)
                continue
            logger.info("Evicted completed worktree %s to stay within %d", record.name, limit)
            if self._state.load().capacity_used() < limit:
                return

        state = self._state.load()
        raise WorktreeCapacityExceededError(
            f"max_worktrees={limit} reached and no completed worktree can be evicted",
            context={
                "active": len(state.with_status(WorktreeStatus.ACTIVE)),
                "completed": len(state.with_status(WorktreeStatus.COMPLETED)),
            },
        )

    def _copy_snapshot(self, worktree_path: Path) -> None:
        """Copy the current config and plan so agents in the worktree see them."""
        source = ProjectPaths(self._repo.path)
        target = ProjectPaths(worktree_path)
        target.launcher_dir.mkdir(parents=True, exist_ok=True)
        for src, dst in (
            (source.config_file, target.config_file),
            (source.plan_file, target.plan_file),
        ):
            if src.exists():
                shutil.copy2(src, dst)

    # -------------------------------------------------------------------------
    # Lifecycle transitions
    # -------------------------------------------------------------------------

    def find_active(self, phase_id: int) -> WorktreeRecord | None:
        return self._state.load().active_for_phase(phase_id)

    def find_by_path(self, path: Path) -> WorktreeRecord | None:
        target = path.resolve()
        for record in self._state.load().worktrees:
            if record.path.resolve() == target:
                return record
        return None

    def complete(self, name: str) -> WorktreeRecord:
        """Mark a worktree Completed; its directory and branch stay in place."""
        record = self._state.set_status(name, WorktreeStatus.COMPLETED)
        logger.info("Worktree %s completed", name)
        return record

    def complete_phase(self, phase_id: int) -> WorktreeRecord | None:
        """Complete the Active worktree of ``phase_id``, if it has one."""
        record = self.find_active(phase_id)
        if record is None:
            return None
        return self.complete(record.name)

    async def remove(self, name: str, force: bool = False) -> bool:
        """Remove a worktree and forget its record.

        Returns False when no record has ``name``. Launcher metadata copied
        into the worktree does not make it dirty.

        Raises:
            WorktreeDirtyError: Uncommitted changes and ``force`` is False
            GitError: git could not remove the worktree
        """
        record = self._state.load().get(name)
        if record is None:
            logger.debug("No worktree record named %s; nothing to remove", name)
            return False

        if record.status is not WorktreeStatus.STALE and record.path.exists():
            if not force:
                changes = await self._uncommitted_changes(record.path)
                if changes:
                    raise WorktreeDirtyError(
                        f"Worktree {name} has uncommitted changes",
                        context={"path": str(record.path), "files": len(changes)},
                    )
            match await self._repo.remove_worktree(record.path):
                case Err(err):
                    raise err
                case Ok(_):
                    pass

        await self._repo.prune_worktrees()
        if await self._repo.branch_exists(record.branch):
            match await self._repo.delete_branch(record.branch):
                case Err(err):
                    logger.warning("Keeping branch %s: %s", record.branch, err.message)
                case Ok(_):
                    pass

        self._state.delete(name)
        logger.info("Removed worktree %s", name)
        return True

    async def _uncommitted_changes(self, path: Path) -> list[str]:
        match await AsyncRepo(path).changed_paths():
            case Ok(paths):
                return [p for p in paths if not p.startswith(LAUNCHER_DIRNAME)]
            case Err(err):
                raise err

    # -------------------------------------------------------------------------
    # Reconciliation and policy
    # -------------------------------------------------------------------------

    async def reconcile(self) -> list[str]:
        """Downgrade records whose worktree git no longer reports to Stale.

        Records are never deleted here and worktrees unknown to the store are
        ignored. Returns the names downgraded by this call.
        """
        match await self._repo.list_worktrees():
            case Ok(entries):
                live = {entry.path.resolve() for entry in entries if not entry.missing}
            case Err(err):
                raise err

        downgraded: list[str] = []
        with self._state.update() as state:
            for record in state.worktrees:
                if record.status is WorktreeStatus.STALE:
                    continue
                if record.path.resolve() not in live:
                    record.status = WorktreeStatus.STALE
                    downgraded.append(record.name)

        for name in downgraded:
            logger.warning("Worktree %s is gone from git; marked Stale", name)
        return downgraded

    async def cleanup(self, *, include_stale: bool = False) -> CleanupReport:
        """Apply the cleanup policy; one failing removal never stops the others."""
        report = CleanupReport(stale=await self.reconcile())

        if self._config.auto_cleanup:
            for record in self._state.load().with_status(WorktreeStatus.COMPLETED):
                await self._try_remove(record.name, report, report.removed)

        limit = self._config.max_worktrees
        state = self._state.load()
        excess = state.capacity_used() - limit
        for record in state.oldest_completed():
            if excess <= 0:
                break
            if record.name in report.failures:
                continue
            if await self._try_remove(record.name, report, report.evicted):
                excess -= 1

        if include_stale:
            for record in self._state.load().with_status(WorktreeStatus.STALE):
                await self._try_remove(record.name, report, report.removed)

        return report

    async def _try_remove(self, name: str, report: CleanupReport, bucket: list[str]) -> bool:
        try:
            await self.remove(name, force=False)
        except (WorktreeDirtyError, GitError) as exc:
            report.failures[name] = str(exc)
            logger.error("Failed to remove worktree %s: %s", name, exc)
            return False
        bucket.append(name)
        return True

    async def sync(self, name: str) -> None:
        """Rebase a worktree's branch onto the base branch, aborting on conflict."""
        record = self._state.load().get(name)
        if record is None:
            raise WorktreeNotFoundError("Unknown worktree", context={"name": name})
        if not record.path.exists():
            raise WorktreeNotFoundError(
                "Worktree directory is missing", context={"path": str(record.path)}
            )

        match await AsyncRepo(record.path).rebase_onto(self._config.base_branch):
            case Ok(_):
                logger.info("Rebased %s onto %s", name, self._config.base_branch)
            case Err(err):
                raise WorktreeSyncError(
                    f"Cannot rebase {name} onto {self._config.base_branch}: {err.message}",
                    context={"path": str(record.path)},
                )

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def list_worktrees(self) -> list[WorktreeOverview]:
        """Every record with TODO/IN_PROGRESS/DONE step counts for its phase.

        Counts come from the worktree's own plan copy while it exists, since
        that is where the phase's agents mark their steps.
        """
        main_plan = _load_plan(self._plan_store) if self._plan_store is not None else None

        overviews: list[WorktreeOverview] = []
        for record in sorted(self._state.load().worktrees, key=lambda r: (r.created_at, r.name)):
            plan = _load_plan(PlanStore(ProjectPaths(record.path).plan_file)) or main_plan
            phase = plan.get_phase(record.phase_id) if plan else None
            counts = phase.step_counts() if phase else dict.fromkeys(Status, 0)
            overviews.append(
                WorktreeOverview(
                    record=record,
                    phase_name=phase.name if phase else None,
                    todo=counts[Status.TODO],
                    in_progress=counts[Status.IN_PROGRESS],
                    done=counts[Status.DONE],
                )
            )
        return overviews


__all__ = [
    "CleanupReport",
    "WorktreeLifecycleManager",
    "WorktreeOverview",
    "render_worktree_name",
]
