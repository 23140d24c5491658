"""Dispatch Mode Controller: turns the engine's next action into agent launches.

Each invocation of ``plaunch`` is one trip through :meth:`DispatchController.advance`.
Validation cycles run in-process and loop; dispatching steps ends the trip,
since every agent re-invokes ``plaunch`` when it finishes its step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from phaselauncher.core.config import LauncherConfig, ProjectPaths
from phaselauncher.core.console import get_logger
from phaselauncher.core.result import (
    ConfigError,
    MaxConcurrentTasksExceededError,
    PhaseNotFoundError,
)
from phaselauncher.dispatch.dispatcher import AgentDispatcher, DispatchRequest, ProcessDispatcher
from phaselauncher.dispatch.prompts import PromptBuilder
from phaselauncher.engine import (
    AcceptedCallback,
    DispatchSteps,
    EscalatedCallback,
    NextAction,
    PhaseProgressionEngine,
    ValidatePhase,
    ValidationOutcome,
    ValidationReport,
)
from phaselauncher.git import AsyncRepo, is_repo
from phaselauncher.plan import DispatchMode, Phase, PlanStore, Status, Step
from phaselauncher.worktree import WorktreeLifecycleManager, WorktreeRecord

logger = get_logger(__name__)

MAX_CONCURRENT_TASKS = 10
DEFAULT_MAX_CYCLES = 20


@dataclass
class AdvanceResult:
    """What one trip through the trampoline did."""

    action: NextAction
    dispatched: list[DispatchRequest] = field(default_factory=list)
    validations: list[ValidationOutcome] = field(default_factory=list)
    worktree: WorktreeRecord | None = None
    cycles: int = 0


class AgentFixer:
    """PhaseFixer that runs a CTO agent to completion in the phase's directory."""

    def __init__(self, dispatcher: AgentDispatcher, prompts: PromptBuilder) -> None:
        self._dispatcher = dispatcher
        self._prompts = prompts

    async def fix(self, phase: Phase, report: ValidationReport, cwd: Path) -> None:
        request = DispatchRequest(
            label=f"phase-{phase.id}-cto-fix",
            title=f"Phase {phase.id} CTO fix",
            prompt=self._prompts.cto_fix_prompt(phase, report),
            cwd=cwd,
        )
        returncode = await self._dispatcher.run(request)
        if returncode != 0:
            logger.warning("CTO fix agent for phase %s exited with %s", phase.id, returncode)


def _check_capacity(count: int) -> None:
    if count > MAX_CONCURRENT_TASKS:
        raise MaxConcurrentTasksExceededError(
            f"{count} tasks requested; at most {MAX_CONCURRENT_TASKS} may run at once",
            context={"requested": count, "limit": MAX_CONCURRENT_TASKS},
        )


def worktree_completion(
    main_store: PlanStore, worktrees: WorktreeLifecycleManager, record: WorktreeRecord
) -> AcceptedCallback:
    """Callback run when a phase is accepted inside its worktree.

    Remediation phases accepted on the way are merged too; the worktree is
    completed once its own phase is accepted.
    """

    def on_accepted(phase: Phase) -> None:
        if phase.id == record.phase_id:
            main_store.merge_phase(phase)
            worktrees.complete(record.name)
        elif phase.remediation_of is not None:
            main_store.merge_phase(phase)

    return on_accepted


def worktree_escalation(main_store: PlanStore, worktree_store: PlanStore) -> EscalatedCallback:
    """Callback mirroring a failed validation inside a worktree onto the main plan.

    The remediation phase is appended to the main plan first; when the main
    plan hands out another id, the worktree copy is renumbered to match so
    later merges line up.
    """

    def on_escalated(outcome: ValidationOutcome) -> None:
        main_store.record_escalation(
            outcome.phase_id, outcome.report.summary(), halted_reason=outcome.halted_reason
        )
        remediation = outcome.remediation_phase
        if remediation is None:
            return
        mirrored = main_store.append_phase(remediation, relabel_steps=True)
        if mirrored.id != remediation.id:
            logger.info(
                "Remediation phase %s is phase %s in the main plan", remediation.id, mirrored.id
            )
            outcome.remediation_phase = worktree_store.renumber_phase(remediation.id, mirrored.id)

    return on_escalated


def link_worktree(
    engine: PhaseProgressionEngine,
    main_store: PlanStore,
    worktrees: WorktreeLifecycleManager,
    record: WorktreeRecord,
) -> None:
    """Report acceptance and escalation of ``record``'s phase back to the main plan."""
    engine.add_accepted_callback(worktree_completion(main_store, worktrees, record))
    engine.add_escalated_callback(worktree_escalation(main_store, engine.store))


class DispatchController:
    """Drives the engine in parallel or step-by-step mode.

    Attributes:
        engine: Progression engine over the plan of ``engine.workdir``
        dispatcher: Starts agent processes
        worktrees: Lifecycle manager, when the project is a git repository
        use_worktrees: Dispatch every phase into its own worktree
    """

    def __init__(
        self,
        engine: PhaseProgressionEngine,
        dispatcher: AgentDispatcher,
        prompts: PromptBuilder,
        *,
        worktrees: WorktreeLifecycleManager | None = None,
        use_worktrees: bool = False,
        lock_timeout: float = 30.0,
        max_cycles: int = DEFAULT_MAX_CYCLES,
    ) -> None:
        self.engine = engine
        self.dispatcher = dispatcher
        self.prompts = prompts
        self.worktrees = worktrees
        self.use_worktrees = use_worktrees
        self._lock_timeout = lock_timeout
        self._max_cycles = max_cycles

    async def advance(self, mode: DispatchMode) -> AdvanceResult:
        """Validate what is ready, then dispatch the next steps and return."""
        result = AdvanceResult(action=self.engine.next_action(mode))
        while result.cycles < self._max_cycles:
            result.cycles += 1
            match result.action:
                case ValidatePhase(phase=phase):
                    outcome = await self.engine.validate_phase(phase.id)
                    if outcome is not None:
                        result.validations.append(outcome)
                    result.action = self.engine.next_action(mode)
                case DispatchSteps(phase=phase, steps=steps):
                    if self.use_worktrees and self.engine.focus_phase is None:
                        # Remediation runs in the worktree of the phase it fixes
                        root = self.engine.store.load().remediation_root(phase)
                        inner = await self.run_phase_in_worktree(root.id, mode)
                        result.action = inner.action
                        result.dispatched = inner.dispatched
                        result.validations.extend(inner.validations)
                        result.worktree = inner.worktree
                    else:
                        result.dispatched = await self._dispatch_steps(
                            phase, steps, mode, self.engine.workdir
                        )
                    return result
                case _:
                    return result

        logger.warning("Stopped after %d validation cycles", self._max_cycles)
        return result

    async def _dispatch_steps(
        self, phase: Phase, steps: list[Step], mode: DispatchMode, cwd: Path
    ) -> list[DispatchRequest]:
        _check_capacity(len(steps))
        claimed = self.engine.store.mark_steps_in_progress(phase.id, [s.id for s in steps])
        requests = [
            DispatchRequest(
                label=f"phase-{phase.id}-step-{step.id}",
                title=f"Phase {phase.id}, Step {step.id}: {step.name}",
                prompt=self.prompts.step_prompt(phase, step, mode),
                cwd=cwd,
            )
            for step in claimed
        ]
        for index, request in enumerate(requests):
            try:
                await self.dispatcher.launch(request)
            except Exception:
                unstarted = [s.id for s in claimed[index:]]
                self.engine.store.release_steps(phase.id, unstarted)
                logger.error(
                    "Launching %s failed; steps %s returned to TODO",
                    request.label,
                    ", ".join(unstarted),
                )
                raise
        logger.info("Dispatched %d step(s) of phase %s", len(requests), phase.id)
        return requests

    async def run_phase_in_worktree(
        self, phase_id: int, mode: DispatchMode = DispatchMode.PARALLEL
    ) -> AdvanceResult:
        """Reuse or create the phase's worktree and advance the phase there."""
        if self.worktrees is None:
            raise ConfigError("Worktrees need a git repository")

        phase = self.engine.store.load().get_phase(phase_id)
        if phase is None:
            raise PhaseNotFoundError("Phase not found", context={"phase": phase_id})
        if phase.status is Status.DONE:
            logger.info("Phase %s is already DONE", phase_id)
            return AdvanceResult(action=self.engine.next_action(mode))

        record = self.worktrees.find_active(phase_id)
        if record is None:
            record = await self.worktrees.create(phase_id)
        else:
            logger.info("Reusing worktree %s for phase %s", record.name, phase_id)

        if phase.status is Status.TODO:
            self.engine.store.mark_phase_status(phase_id, Status.IN_PROGRESS)

        inner = self.for_worktree(record, main_store=self.engine.store)
        result = await inner.advance(mode)
        result.worktree = record
        return result

    def for_worktree(self, record: WorktreeRecord, *, main_store: PlanStore) -> DispatchController:
        """A controller confined to ``record``'s phase, over the worktree's plan copy."""
        if self.worktrees is None:
            raise ConfigError("Worktrees need a git repository")
        store = PlanStore(ProjectPaths(record.path).plan_file, lock_timeout=self._lock_timeout)
        engine = self.engine.fork(store, record.path, focus_phase=record.phase_id)
        link_worktree(engine, main_store, self.worktrees, record)
        return DispatchController(
            engine,
            self.dispatcher,
            self.prompts,
            worktrees=self.worktrees,
            lock_timeout=self._lock_timeout,
            max_cycles=self._max_cycles,
        )

    async def launch_tasks(self, tasks: list[str], cwd: Path | None = None) -> list[DispatchRequest]:
        """Dispatch free-form tasks, one agent each."""
        _check_capacity(len(tasks))
        workdir = cwd or self.engine.workdir
        requests = [
            DispatchRequest(
                label=f"task-{index}",
                title=f"Task {index}: {task[:60]}",
                prompt=self.prompts.task_prompt(task),
                cwd=workdir,
            )
            for index, task in enumerate(tasks, start=1)
        ]
        for request in requests:
            await self.dispatcher.launch(request)
        return requests


async def open_controller(
    project_root: Path,
    config: LauncherConfig,
    *,
    dispatcher: AgentDispatcher | None = None,
) -> DispatchController:
    """Wire the controller for ``project_root``, which may be a linked worktree.

    Inside a worktree created by the launcher, the controller is confined to
    that worktree's phase and accepting it updates the main repository's plan.
    """
    root = project_root.resolve()
    lock_timeout = config.storage.lock_timeout
    worktrees: WorktreeLifecycleManager | None = None
    main_root = root

    if await is_repo(root):
        repo = (await AsyncRepo.open(root)).unwrap()
        root = repo.path
        main_root = (await repo.main_root()).unwrap()
        worktrees = await WorktreeLifecycleManager.open(
            root, config.worktree, lock_timeout=lock_timeout
        )

    record = worktrees.find_by_path(root) if worktrees and main_root != root else None

    store = PlanStore(ProjectPaths(root).plan_file, lock_timeout=lock_timeout)
    dispatcher = dispatcher or ProcessDispatcher(config.agent.command)
    prompts = PromptBuilder(config)
    engine = PhaseProgressionEngine(
        store,
        config.cto,
        workdir=root,
        fixer=AgentFixer(dispatcher, prompts),
        focus_phase=record.phase_id if record else None,
    )

    if record is not None and worktrees is not None:
        main_store = PlanStore(ProjectPaths(main_root).plan_file, lock_timeout=lock_timeout)
        link_worktree(engine, main_store, worktrees, record)
    elif worktrees is not None:
        manager = worktrees
        engine.add_accepted_callback(lambda phase: manager.complete_phase(phase.id))

    return DispatchController(
        engine,
        dispatcher,
        prompts,
        worktrees=worktrees,
        use_worktrees=config.worktree.enabled and record is None,
        lock_timeout=lock_timeout,
    )


__all__ = [
    "DEFAULT_MAX_CYCLES",
    "MAX_CONCURRENT_TASKS",
    "AdvanceResult",
    "AgentFixer",
    "DispatchController",
    "link_worktree",
    "open_controller",
    "worktree_completion",
    "worktree_escalation",
]
