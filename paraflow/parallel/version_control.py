"""
Version Control
===============

Narrow capability interface over the version control primitives the
worktree manager needs, plus a git implementation that shells out
asynchronously.

Key Features:
- Branch creation and deletion
- Worktree add/remove/prune
- Commit of pending changes inside a worktree
- Merge back into a base branch with conflict detection and abort
- Per-command timeout that kills the child process
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
import asyncio
import logging

from paraflow.parallel.errors import GitCommandError, WorktreeConflictError

logger = logging.getLogger(__name__)


class VersionControl(ABC):
    """Version control operations used for worktree isolation."""

    @abstractmethod
    async def branch_exists(self, branch: str) -> bool:
        """Return True if a local branch with this name exists."""

    @abstractmethod
    async def create_branch(self, branch: str, base: str) -> None:
        """Create branch from base without checking it out."""

    @abstractmethod
    async def delete_branch(self, branch: str, force: bool = False) -> None:
        """Delete a local branch."""

    @abstractmethod
    async def add_worktree(self, path: Path, branch: str) -> None:
        """Check out an existing branch into a new working copy at path."""

    @abstractmethod
    async def remove_worktree(self, path: Path, force: bool = True) -> None:
        """Remove the working copy at path."""

    @abstractmethod
    async def prune_worktrees(self) -> None:
        """Drop bookkeeping for working copies that no longer exist."""

    @abstractmethod
    async def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        """Return True if the working copy has staged, unstaged or untracked changes."""

    @abstractmethod
    async def has_unmerged_paths(self, cwd: Optional[Path] = None) -> bool:
        """Return True if the working copy is in the middle of a conflicted merge."""

    @abstractmethod
    async def get_conflicting_files(self, cwd: Optional[Path] = None) -> List[str]:
        """List files with unresolved conflicts."""

    @abstractmethod
    async def commit_all(self, cwd: Path, message: str) -> None:
        """Stage every change in the working copy and commit it."""

    @abstractmethod
    async def merge(self, branch: str, into: str, message: str, squash: bool = False) -> str:
        """
        Merge branch into the base branch.

        Returns:
            Resulting commit SHA

        Raises:
            WorktreeConflictError: If the merge conflicts (already aborted)
            GitCommandError: For any other failure
        """

    @abstractmethod
    async def abort_merge(self) -> None:
        """Abandon an in-progress merge in the main working copy."""


class GitVersionControl(VersionControl):
    """VersionControl backed by the git executable."""

    def __init__(self, repo_path: str, command_timeout: float = 60.0):
        """
        Initialize git version control.

        Args:
            repo_path: Path to the main repository working copy
            command_timeout: Timeout in seconds for each git command
        """
        self.repo_path = Path(repo_path)
        self.command_timeout = command_timeout

    async def _run_git(
        self,
        args: List[str],
        operation: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None
    ) -> str:
        """
        Run a git command asynchronously.

        Args:
            args: Git command arguments (e.g., ['status', '--short'])
            operation: Operation name reported in errors
            cwd: Working directory for command (defaults to repo_path)
            timeout: Command timeout in seconds (defaults to command_timeout)

        Returns:
            Command stdout output

        Raises:
            GitCommandError: If command fails or times out
        """
        if cwd is None:
            cwd = self.repo_path
        if timeout is None:
            timeout = self.command_timeout

        cmd = ['git'] + args
        command = ' '.join(cmd)
        logger.debug(f"Running git command: {command} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise GitCommandError(operation, None, "Git command not found. Is git installed?", command)
        except OSError as e:
            raise GitCommandError(operation, None, f"Failed to run git command: {e}", command)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(operation, None, f"Timed out after {timeout}s", command)
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_str = stdout.decode('utf-8', errors='replace').strip()
        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            raise GitCommandError(operation, process.returncode, stderr_str, command, stdout_str)

        return stdout_str

    async def branch_exists(self, branch: str) -> bool:
        try:
            await self._run_git(
                ['rev-parse', '--verify', '--quiet', f'refs/heads/{branch}'],
                operation='branch_exists'
            )
            return True
        except GitCommandError as e:
            if e.exit_code is None:
                raise
            return False

    async def create_branch(self, branch: str, base: str) -> None:
        await self._run_git(['branch', branch, base], operation='create_branch')
        logger.info(f"Created branch {branch} from {base}")

    async def delete_branch(self, branch: str, force: bool = False) -> None:
        await self._run_git(['branch', '-D' if force else '-d', branch], operation='delete_branch')
        logger.info(f"Deleted branch {branch}")

    async def add_worktree(self, path: Path, branch: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        await self._run_git(['worktree', 'add', str(path), branch], operation='add_worktree')
        logger.info(f"Created worktree at {path}")

    async def remove_worktree(self, path: Path, force: bool = True) -> None:
        args = ['worktree', 'remove']
        if force:
            args.append('--force')
        args.append(str(path))
        await self._run_git(args, operation='remove_worktree')
        logger.info(f"Removed worktree at {path}")

    async def prune_worktrees(self) -> None:
        await self._run_git(['worktree', 'prune'], operation='prune_worktrees')

    async def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        output = await self._run_git(['status', '--porcelain'], operation='status', cwd=cwd)
        return len(output) > 0

    async def has_unmerged_paths(self, cwd: Optional[Path] = None) -> bool:
        return bool(await self.get_conflicting_files(cwd))

    async def get_conflicting_files(self, cwd: Optional[Path] = None) -> List[str]:
        output = await self._run_git(
            ['diff', '--name-only', '--diff-filter=U'],
            operation='conflicting_files',
            cwd=cwd
        )
        return [line for line in output.splitlines() if line.strip()]

    async def commit_all(self, cwd: Path, message: str) -> None:
        await self._run_git(['add', '-A'], operation='commit', cwd=cwd)
        await self._run_git(['commit', '-m', message], operation='commit', cwd=cwd)
        logger.info(f"Committed pending changes in {cwd}")

    async def _current_branch(self) -> str:
        return await self._run_git(['rev-parse', '--abbrev-ref', 'HEAD'], operation='current_branch')

    async def abort_merge(self) -> None:
        try:
            await self._run_git(['merge', '--abort'], operation='abort_merge')
        except GitCommandError:
            # Squash merges leave no MERGE_HEAD to abort
            await self._run_git(['reset', '--merge'], operation='abort_merge')
        logger.info("Merge aborted")

    async def merge(self, branch: str, into: str, message: str, squash: bool = False) -> str:
        current = await self._current_branch()
        if current != into:
            await self._run_git(['checkout', into], operation='checkout')
            logger.info(f"Switched to {into}")

        try:
            if squash:
                await self._run_git(['merge', '--squash', branch], operation='merge')
                await self._run_git(['commit', '-m', message], operation='merge')
            else:
                await self._run_git(['merge', '--no-ff', '-m', message, branch], operation='merge')
        except GitCommandError as e:
            if e.exit_code is not None and 'CONFLICT' in e.output:
                files = await self.get_conflicting_files()
                logger.error(f"Merge conflict merging {branch} into {into}: {files}")
                await self.abort_merge()
                raise WorktreeConflictError(branch, files)
            raise

        merge_commit = await self._run_git(['rev-parse', 'HEAD'], operation='merge')
        logger.info(f"Merged {branch} into {into}: {merge_commit}")
        return merge_commit
