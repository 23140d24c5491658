"""Command execution utilities.

Provides:
- CommandResult for captured process output
- CommandRunner protocol and the LocalRunner implementation
- run_shell_command for parsing and running a configured command string
"""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from phaselauncher.core.console import get_logger
from phaselauncher.core.result import CommandExecutionError, Err, Ok, Result

logger = get_logger(__name__)


@dataclass(slots=True)
class CommandResult:
    """Result of a shell command execution."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner(Protocol):
    """Protocol for command execution backends."""

    async def run_command(
        self,
        tokens: list[str],
        cwd: Path,
        *,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> Result[CommandResult, CommandExecutionError]: ...


class LocalRunner:
    """Execute commands directly on the local system."""

    async def run_command(
        self,
        tokens: list[str],
        cwd: Path,
        *,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> Result[CommandResult, CommandExecutionError]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *tokens,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=env,
            )
        except FileNotFoundError as exc:
            return Err(
                CommandExecutionError("Command not found", context={"error": str(exc), "cmd": tokens})
            )
        except OSError as exc:
            return Err(
                CommandExecutionError(
                    "Failed to start command", context={"error": str(exc), "cmd": tokens}
                )
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return Err(
                CommandExecutionError(
                    f"Command timed out after {timeout}s", context={"cmd": tokens}
                )
            )

        return Ok(
            CommandResult(
                returncode=proc.returncode or 0,
                stdout=stdout_bytes.decode(errors="replace"),
                stderr=stderr_bytes.decode(errors="replace"),
            )
        )


async def run_shell_command(
    command: str,
    root: Path,
    *,
    timeout: float | None = None,
    runner: CommandRunner | None = None,
    env: dict[str, str] | None = None,
) -> Result[CommandResult, CommandExecutionError]:
    """Parse a command string and execute it without a shell.

    Args:
        command: Command string, split with shell quoting rules
        root: Working directory for the command
        timeout: Seconds before the process is killed
        runner: Execution backend (defaults to LocalRunner)
        env: Optional environment variables

    Returns:
        Result containing CommandResult on completion (any exit code),
        CommandExecutionError when the command never ran to completion
    """
    try:
        tokens = shlex.split(command)
    except ValueError as exc:
        return Err(
            CommandExecutionError(
                "Failed to parse command", context={"command": command, "error": str(exc)}
            )
        )

    if not tokens:
        return Err(CommandExecutionError("Empty command", context={"command": command}))

    backend = runner or LocalRunner()
    result = await backend.run_command(tokens, root, timeout=timeout, env=env)
    if isinstance(result, Err):
        logger.warning("run_shell_command failure: %s", result.error)
    return result


__all__ = [
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "run_shell_command",
]
