"""Agent dispatch and the parallel / step-by-step trampoline.

This package provides:
    - DispatchController: one advance of the plan per invocation
    - AgentDispatcher / ProcessDispatcher: start agent processes
    - PromptBuilder: Jinja2-rendered agent prompts
"""

from __future__ import annotations

from .controller import (
    DEFAULT_MAX_CYCLES,
    MAX_CONCURRENT_TASKS,
    AdvanceResult,
    AgentFixer,
    DispatchController,
    open_controller,
    worktree_completion,
)
from .dispatcher import AgentDispatcher, DispatchRequest, ProcessDispatcher
from .prompts import PromptBuilder, relaunch_command, render_template

__all__ = [
    "DEFAULT_MAX_CYCLES",
    "MAX_CONCURRENT_TASKS",
    "AdvanceResult",
    "AgentDispatcher",
    "AgentFixer",
    "DispatchController",
    "DispatchRequest",
    "ProcessDispatcher",
    "PromptBuilder",
    "open_controller",
    "relaunch_command",
    "render_template",
    "worktree_completion",
]
