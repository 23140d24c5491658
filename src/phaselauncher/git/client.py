from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from phaselauncher.core.result import Err, GitError, Ok, Result


@dataclass(frozen=True)
class GitWorktree:
    """One entry of `git worktree list --porcelain`."""

    path: Path
    branch: str
    head: str
    locked: bool
    prunable: bool

    @property
    def missing(self) -> bool:
        """git still lists the entry but its directory is gone."""
        return self.prunable


async def _git(cwd: Path, *args: str) -> Result[str, GitError]:
    """Run one git command in ``cwd``; stdout on success, GitError otherwise."""
    context: dict[str, object] = {"cwd": str(cwd), "args": list(args)}
    if not cwd.is_dir():
        return Err(GitError("Repository path does not exist", context=context))

    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return Err(GitError("git executable not found on PATH", context=context))
    except OSError as exc:
        return Err(GitError(f"Failed to start git: {exc}", context=context))

    out, err = await process.communicate()
    stdout = out.decode("utf-8", errors="replace")
    if process.returncode == 0:
        return Ok(stdout)

    diagnostic = err.decode("utf-8", errors="replace").strip() or stdout.strip()
    context["returncode"] = process.returncode
    return Err(GitError(diagnostic or f"git {args[0]} failed", context=context))


def _done(result: Result[str, GitError]) -> Result[None, GitError]:
    return result.map(lambda _: None)


def _parse_worktree_block(block: str) -> GitWorktree | None:
    fields: dict[str, str] = {}
    for line in block.splitlines():
        key, _, value = line.partition(" ")
        fields[key] = value
    if "worktree" not in fields:
        return None
    return GitWorktree(
        path=Path(fields["worktree"]),
        branch=fields.get("branch", "").removeprefix("refs/heads/"),
        head=fields.get("HEAD", ""),
        locked="locked" in fields,
        prunable="prunable" in fields,
    )


def parse_worktree_list(output: str) -> list[GitWorktree]:
    """Entries are blank-line separated blocks of `key [value]` lines."""
    entries = (_parse_worktree_block(block) for block in output.strip().split("\n\n"))
    return [entry for entry in entries if entry is not None]


class AsyncRepo:
    """Non-blocking git commands against one working tree."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        """Open the working tree containing ``path`` (main or linked)."""
        match await _git(Path(path).expanduser(), "rev-parse", "--show-toplevel"):
            case Ok(top):
                return Ok(cls(Path(top.strip()).resolve()))
            case Err(err):
                return Err(err)

    async def run_git(self, *args: str) -> Result[str, GitError]:
        return await _git(self._root, *args)

    async def main_root(self) -> Result[Path, GitError]:
        """Top level of the main working tree, also when opened on a linked worktree."""
        match await self.run_git("rev-parse", "--path-format=absolute", "--git-common-dir"):
            case Ok(common_dir):
                return Ok(Path(common_dir.strip()).resolve().parent)
            case Err(err):
                return Err(err)

    async def ref_exists(self, ref: str) -> bool:
        result = await self.run_git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        return result.is_ok()

    async def branch_exists(self, branch: str) -> bool:
        result = await self.run_git("show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.is_ok()

    async def changed_paths(self) -> Result[list[str], GitError]:
        """Paths with staged, unstaged or untracked changes."""
        match await self.run_git("status", "--porcelain", "--untracked-files=normal"):
            case Ok(output):
                return Ok([line[3:] for line in output.splitlines() if len(line) > 3])
            case Err(err):
                return Err(err)

    # -------------------------------------------------------------------------
    # Worktrees
    # -------------------------------------------------------------------------

    async def add_worktree(self, path: Path, branch: str, base: str) -> Result[Path, GitError]:
        """Check out a new ``branch`` started from ``base`` into ``path``."""
        match await self.run_git("worktree", "add", "-b", branch, str(path), base):
            case Ok(_):
                return Ok(path.resolve())
            case Err(err):
                return Err(err)

    async def remove_worktree(self, path: Path) -> Result[None, GitError]:
        """Remove the worktree at ``path`` whatever its working-copy state."""
        return _done(await self.run_git("worktree", "remove", "--force", str(path)))

    async def list_worktrees(self) -> Result[list[GitWorktree], GitError]:
        match await self.run_git("worktree", "list", "--porcelain"):
            case Ok(output):
                return Ok(parse_worktree_list(output))
            case Err(err):
                return Err(err)

    async def prune_worktrees(self) -> Result[None, GitError]:
        return _done(await self.run_git("worktree", "prune"))

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]:
        """Delete a local branch; without ``force`` git keeps unmerged branches."""
        return _done(await self.run_git("branch", "-D" if force else "-d", branch))

    async def rebase_onto(self, base: str) -> Result[None, GitError]:
        """Rebase the checked-out branch onto ``base``; a conflicting rebase is aborted."""
        match await self.run_git("rebase", base):
            case Ok(_):
                return Ok(None)
            case Err(err):
                await self.run_git("rebase", "--abort")
                return Err(err)


async def is_repo(path: Path | str = ".") -> bool:
    match await _git(Path(path).expanduser(), "rev-parse", "--is-inside-work-tree"):
        case Ok(output):
            return output.strip() == "true"
        case Err(_):
            return False
