"""
Shared fixtures for paraflow tests.

FakeVersionControl keeps branches and worktrees in memory so the worktree
manager and coordinator can be tested without a git executable.
"""

import asyncio
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from paraflow.config import ParallelConfig
from paraflow.parallel.errors import GitCommandError, WorktreeConflictError
from paraflow.parallel.version_control import VersionControl
from paraflow.parallel.worktree_manager import WorktreeManager


class FakeVersionControl(VersionControl):
    """
    In-memory VersionControl with failure injection.

    Attributes:
        branches: Existing local branches
        worktrees: Worktree path -> checked out branch
        unmerged: Report unmerged paths in the main working copy
        fail_on: Operation name -> error raised by that operation
        hang_on: Operations that block until cancelled
        gates: Operation -> event the operation waits on before completing
        conflicts: Branch -> conflicting files reported by merge
        hang_branches: Branches whose merge blocks until cancelled
        uncommitted: Worktree paths with pending changes
        merged: (branch, into) pairs merged so far
        aborted: Number of abort_merge calls
        commits: (path, message) pairs committed so far
        calls: Operation names in call order
    """

    def __init__(self, branches: Optional[Set[str]] = None):
        self.branches: Set[str] = set(branches or {"main"})
        self.worktrees: Dict[str, str] = {}
        self.unmerged = False
        self.fail_on: Dict[str, GitCommandError] = {}
        self.hang_on: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.started = asyncio.Event()
        self.conflicts: Dict[str, List[str]] = {}
        self.hang_branches: Set[str] = set()
        self.uncommitted: Set[str] = set()
        self.merged: List[tuple] = []
        self.aborted = 0
        self.commits: List[tuple] = []
        self.calls: List[str] = []
        self._sha = 0

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.hang_on:
            self.started.set()
            await asyncio.sleep(3600)
        if operation in self.gates:
            self.started.set()
            await self.gates[operation].wait()
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def fail(self, operation: str, exit_code: int = 128, stderr: str = "fatal: simulated failure") -> None:
        self.fail_on[operation] = GitCommandError(operation, exit_code, stderr)

    async def branch_exists(self, branch: str) -> bool:
        self.calls.append("branch_exists")
        return branch in self.branches

    async def create_branch(self, branch: str, base: str) -> None:
        await self._enter("create_branch")
        if base not in self.branches:
            raise GitCommandError("create_branch", 128, f"fatal: not a valid object name: '{base}'")
        self.branches.add(branch)

    async def delete_branch(self, branch: str, force: bool = False) -> None:
        await self._enter("delete_branch")
        self.branches.discard(branch)

    async def add_worktree(self, path: Path, branch: str) -> None:
        # Leave a partial directory behind when failing, like an interrupted checkout
        Path(path).mkdir(parents=True, exist_ok=True)
        await self._enter("add_worktree")
        self.worktrees[str(path)] = branch

    async def remove_worktree(self, path: Path, force: bool = True) -> None:
        await self._enter("remove_worktree")
        if str(path) not in self.worktrees:
            raise GitCommandError("remove_worktree", 128, f"fatal: '{path}' is not a working tree")
        del self.worktrees[str(path)]
        shutil.rmtree(path, ignore_errors=True)

    async def prune_worktrees(self) -> None:
        await self._enter("prune_worktrees")

    async def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        self.calls.append("has_uncommitted_changes")
        return str(cwd) in self.uncommitted

    async def has_unmerged_paths(self, cwd: Optional[Path] = None) -> bool:
        self.calls.append("has_unmerged_paths")
        return self.unmerged

    async def get_conflicting_files(self, cwd: Optional[Path] = None) -> List[str]:
        return []

    async def commit_all(self, cwd: Path, message: str) -> None:
        await self._enter("commit_all")
        self.commits.append((str(cwd), message))
        self.uncommitted.discard(str(cwd))

    async def abort_merge(self) -> None:
        await self._enter("abort_merge")
        self.aborted += 1

    async def merge(self, branch: str, into: str, message: str, squash: bool = False) -> str:
        await self._enter("merge")
        if branch in self.hang_branches:
            await asyncio.sleep(3600)
        if branch in self.conflicts:
            raise WorktreeConflictError(branch, self.conflicts[branch])
        self.merged.append((branch, into))
        self._sha += 1
        return f"{self._sha:040x}"


@pytest.fixture
def fake_vcs():
    """In-memory version control with a main branch."""
    return FakeVersionControl()


@pytest.fixture
def config():
    """Small, fast configuration for tests."""
    return ParallelConfig(max_worktrees=3, operation_timeout=5.0, task_timeout=5.0)


@pytest.fixture
def manager(tmp_path, fake_vcs, config):
    """WorktreeManager over the fake version control."""
    return WorktreeManager(str(tmp_path), vcs=fake_vcs, config=config)
