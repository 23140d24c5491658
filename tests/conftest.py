from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner


def _git(path: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=path, check=True, capture_output=True, text=True
    )
    return completed.stdout


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch: Any) -> None:
    """Drop PLAUNCH_* variables so tests only see the config they write."""
    for key in list(os.environ):
        if key.startswith("PLAUNCH_"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import phaselauncher.commands.launch as launch_cmd
    import phaselauncher.commands.setup as setup_cmd
    import phaselauncher.commands.worktree as worktree_cmd
    import phaselauncher.core.console as core_console
    import phaselauncher.core.decorators as decorators
    import phaselauncher.main as plaunch_main

    for module in (core_console, decorators, plaunch_main, launch_cmd, setup_cmd, worktree_cmd):
        monkeypatch.setattr(module, "console", test_console)
    return test_console


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository on branch `main` with one commit."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()

    # Use subprocess directly for setup (not part of SUT)
    _git(repo_path, "init")
    _git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo_path, "config", "user.email", "test@test.com")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repo\n")
    _git(repo_path, "add", ".")
    _git(repo_path, "commit", "-m", "Initial commit")
    return repo_path
