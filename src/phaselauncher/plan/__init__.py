"""Task plan data model and persistence.

This package provides:
    - TaskPlan / Phase / Step: the plan document model
    - Status: monotonic TODO -> IN_PROGRESS -> DONE lifecycle
    - PlanStore: locked, atomic persistence of `todos.json`
    - DispatchMode: parallel or step-by-step scheduling
"""

from __future__ import annotations

from .models import Phase, Status, Step, TaskPlan, step_label, step_sort_key
from .store import DispatchMode, PlanStore

__all__ = [
    "DispatchMode",
    "Phase",
    "PlanStore",
    "Status",
    "Step",
    "TaskPlan",
    "step_label",
    "step_sort_key",
]
