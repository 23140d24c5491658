"""CTO validation: run the configured commands and band the failure count."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from phaselauncher.core.config import CtoConfig, ValidationCommand
from phaselauncher.core.console import get_logger
from phaselauncher.core.result import Err, Ok, ValidationCommandExecutionError
from phaselauncher.core.sys.execution import CommandRunner, LocalRunner, run_shell_command

logger = get_logger(__name__)

# Captured output kept per command for summaries and fix prompts.
MAX_OUTPUT_CHARS = 4000


class OutcomeBand(Enum):
    """Which branch of the quality gate a failure count falls into."""

    PASS = "pass"
    FEW = "few"
    MANY = "many"


def classify(failures: int, few_errors_max: int) -> OutcomeBand:
    if failures <= 0:
        return OutcomeBand.PASS
    if failures <= few_errors_max:
        return OutcomeBand.FEW
    return OutcomeBand.MANY


def count_errors(output: str, pattern: str) -> int:
    """Lines of ``output`` matching ``pattern``; a failing command counts at least once."""
    regex = re.compile(pattern)
    return max(1, sum(1 for line in output.splitlines() if regex.search(line)))


def _tail(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...\n" + text[-limit:]


@dataclass
class CommandOutcome:
    """Result of one validation command."""

    command: ValidationCommand
    passed: bool
    error_count: int
    returncode: int | None = None
    output: str = ""
    execution_error: ValidationCommandExecutionError | None = None

    @property
    def label(self) -> str:
        return self.command.description or self.command.command


@dataclass
class ValidationReport:
    outcomes: list[CommandOutcome] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(o.error_count for o in self.outcomes)

    @property
    def failed(self) -> list[CommandOutcome]:
        return [o for o in self.outcomes if not o.passed]

    def band(self, few_errors_max: int) -> OutcomeBand:
        return classify(self.failures, few_errors_max)

    def summary(self) -> str:
        if not self.outcomes:
            return "Validation passed: no validation commands configured."
        if not self.failed:
            return f"Validation passed: {len(self.outcomes)} command(s), 0 failures."
        parts = [f"{o.label} ({o.error_count})" for o in self.failed]
        return f"Validation found {self.failures} failure(s): " + ", ".join(parts)


class ValidationRunner:
    """Runs validation commands in declared order inside a working directory.

    A command that cannot be run at all is recorded as a failure rather than
    raised, so the outcome policy always sees a complete report.
    """

    def __init__(self, config: CtoConfig, *, runner: CommandRunner | None = None) -> None:
        self._config = config
        self._runner = runner or LocalRunner()

    async def run(self, cwd: Path) -> ValidationReport:
        report = ValidationReport()
        for command in self._config.validation_commands:
            outcome = await self._run_one(command, cwd)
            status = "ok" if outcome.passed else f"{outcome.error_count} failure(s)"
            logger.info("Validation '%s': %s", outcome.label, status)
            report.outcomes.append(outcome)
        return report

    async def _run_one(self, command: ValidationCommand, cwd: Path) -> CommandOutcome:
        match await run_shell_command(
            command.command,
            cwd,
            timeout=self._config.command_timeout,
            runner=self._runner,
        ):
            case Err(err):
                error = ValidationCommandExecutionError(err.message, context=err.context)
                return CommandOutcome(
                    command=command,
                    passed=False,
                    error_count=1,
                    output=str(error),
                    execution_error=error,
                )
            case Ok(result):
                if result.ok:
                    return CommandOutcome(
                        command=command, passed=True, error_count=0, returncode=0
                    )
                return CommandOutcome(
                    command=command,
                    passed=False,
                    error_count=count_errors(result.output, command.error_pattern),
                    returncode=result.returncode,
                    output=_tail(result.output),
                )


__all__ = [
    "CommandOutcome",
    "OutcomeBand",
    "ValidationReport",
    "ValidationRunner",
    "classify",
    "count_errors",
]
