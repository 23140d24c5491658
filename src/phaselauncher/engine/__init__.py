"""Phase progression and the CTO validation cycle.

This package provides:
    - PhaseProgressionEngine: next-action selection and outcome policy
    - ValidationRunner: runs configured validation commands
    - OutcomeBand / classify: PASS, FEW or MANY failures
"""

from __future__ import annotations

from .progression import (
    AcceptedCallback,
    AllDone,
    AwaitRunning,
    DispatchSteps,
    EscalatedCallback,
    Halted,
    NextAction,
    PhaseFixer,
    PhaseProgressionEngine,
    PhaseState,
    ValidatePhase,
    ValidationOutcome,
    build_remediation_phase,
)
from .validation import (
    CommandOutcome,
    OutcomeBand,
    ValidationReport,
    ValidationRunner,
    classify,
    count_errors,
)

__all__ = [
    "AcceptedCallback",
    "AllDone",
    "AwaitRunning",
    "CommandOutcome",
    "DispatchSteps",
    "EscalatedCallback",
    "Halted",
    "NextAction",
    "OutcomeBand",
    "PhaseFixer",
    "PhaseProgressionEngine",
    "PhaseState",
    "ValidatePhase",
    "ValidationOutcome",
    "ValidationReport",
    "ValidationRunner",
    "build_remediation_phase",
    "classify",
    "count_errors",
]
