"""System utilities package.

Organized submodules:
- execution: Command execution and run_shell_command
"""

from phaselauncher.core.sys.execution import (
    CommandResult,
    CommandRunner,
    LocalRunner,
    run_shell_command,
)

__all__ = [
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "run_shell_command",
]
