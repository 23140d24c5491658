"""Agent dispatch: hand a prompt and a working directory to an executor process."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from phaselauncher.core.config import ProjectPaths
from phaselauncher.core.console import get_logger
from phaselauncher.core.result import CommandExecutionError

logger = get_logger(__name__)

_UNSAFE_LABEL_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class DispatchRequest:
    """One unit of work for an agent.

    Attributes:
        label: File-safe identifier, e.g. ``phase-1-step-1A``
        title: Human-readable description for logs
        prompt: Full prompt text
        cwd: Directory the agent works in
    """

    label: str
    title: str
    prompt: str
    cwd: Path


class AgentDispatcher(Protocol):
    async def launch(self, request: DispatchRequest) -> None:
        """Start an agent and return without waiting for it."""
        ...

    async def run(self, request: DispatchRequest) -> int:
        """Start an agent and wait for it; returns its exit code."""
        ...


class ProcessDispatcher:
    """Runs the configured agent command with the prompt file on stdin.

    Prompts and agent output are kept under ``.phaselauncher/prompts/`` of
    the working directory. Launched agents run in their own session so they
    outlive this process.
    """

    def __init__(self, command: list[str]) -> None:
        if not command:
            raise CommandExecutionError("Agent command is empty")
        self._command = list(command)

    def write_prompt(self, request: DispatchRequest) -> Path:
        prompts_dir = ProjectPaths(request.cwd).prompts_dir
        prompts_dir.mkdir(parents=True, exist_ok=True)
        label = _UNSAFE_LABEL_CHARS.sub("_", request.label)
        prompt_file = prompts_dir / f"{label}.txt"
        prompt_file.write_text(request.prompt, encoding="utf-8")
        return prompt_file

    async def _spawn(self, request: DispatchRequest) -> asyncio.subprocess.Process:
        prompt_file = self.write_prompt(request)
        log_file = prompt_file.with_suffix(".log")
        try:
            with prompt_file.open("rb") as stdin, log_file.open("ab") as output:
                process = await asyncio.create_subprocess_exec(
                    *self._command,
                    cwd=request.cwd,
                    stdin=stdin,
                    stdout=output,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as exc:
            raise CommandExecutionError(
                "Agent command not found", context={"cmd": self._command[0]}
            ) from exc
        except OSError as exc:
            raise CommandExecutionError(
                "Failed to start agent", context={"cmd": self._command[0], "error": str(exc)}
            ) from exc

        logger.info("Started agent for %s (pid %s)", request.title, process.pid)
        logger.debug("Prompt: %s, output: %s", prompt_file, log_file)
        return process

    async def launch(self, request: DispatchRequest) -> None:
        await self._spawn(request)

    async def run(self, request: DispatchRequest) -> int:
        process = await self._spawn(request)
        returncode = await process.wait()
        logger.info("Agent for %s exited with %s", request.title, returncode)
        return returncode


__all__ = ["AgentDispatcher", "DispatchRequest", "ProcessDispatcher"]
