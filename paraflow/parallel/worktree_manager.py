"""
Worktree Manager
================

Manages git worktrees for isolated parallel task execution.
Each concurrently running task gets its own worktree on its own branch.

Key Features:
- Creates one worktree per task, with collision and capacity checks
- Enforces a cap on live worktrees (fails fast, no queueing)
- Rolls back partially created branches/directories on failure or cancellation
- Consolidates (merges) finished worktrees back into their base branch
- Per-worktree partial-failure semantics during consolidation
- Idempotent cleanup
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable
import asyncio
import logging
import re
import shutil
import uuid

from paraflow.config import ParallelConfig
from paraflow.parallel.errors import (
    GitCommandError,
    WorktreeConflictError,
    WorktreeCapacityError,
    WorktreeCollisionError,
    BaseBranchError,
)
from paraflow.parallel.version_control import VersionControl, GitVersionControl

logger = logging.getLogger(__name__)


class WorktreeStatus(Enum):
    """Lifecycle states of a worktree."""
    CREATING = "creating"
    ACTIVE = "active"
    MERGING = "merging"
    CONSOLIDATED = "consolidated"
    DESTROYED = "destroyed"
    FAILED = "failed"


# States that hold a slot against the concurrency cap
LIVE_STATUSES = {WorktreeStatus.CREATING, WorktreeStatus.ACTIVE, WorktreeStatus.MERGING}

TERMINAL_STATUSES = {WorktreeStatus.DESTROYED, WorktreeStatus.FAILED}

ALLOWED_TRANSITIONS = {
    WorktreeStatus.CREATING: {WorktreeStatus.ACTIVE, WorktreeStatus.FAILED, WorktreeStatus.DESTROYED},
    WorktreeStatus.ACTIVE: {WorktreeStatus.MERGING, WorktreeStatus.FAILED, WorktreeStatus.DESTROYED},
    WorktreeStatus.MERGING: {
        WorktreeStatus.CONSOLIDATED,
        WorktreeStatus.ACTIVE,
        WorktreeStatus.FAILED,
        WorktreeStatus.DESTROYED,
    },
    WorktreeStatus.CONSOLIDATED: {WorktreeStatus.DESTROYED, WorktreeStatus.FAILED},
    WorktreeStatus.DESTROYED: set(),
    WorktreeStatus.FAILED: set(),
}


@dataclass
class Worktree:
    """
    Information about a worktree.

    Attributes:
        id: Worktree identifier
        task_id: Task this worktree belongs to
        branch: Git branch name
        base_branch: Branch the worktree forks from and merges into
        path: Filesystem path to worktree
        status: Current lifecycle status
        created_at: When worktree was created
        updated_at: When the status last changed
        consolidated_at: When worktree was merged (if applicable)
        merge_commit: Merge commit SHA (if consolidated)
        error: Last error message (if failed)
    """
    id: str
    task_id: str
    branch: str
    base_branch: str
    path: str
    status: WorktreeStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    consolidated_at: Optional[datetime] = None
    merge_commit: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'task_id': self.task_id,
            'branch': self.branch,
            'base_branch': self.base_branch,
            'path': self.path,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'consolidated_at': self.consolidated_at.isoformat() if self.consolidated_at else None,
            'merge_commit': self.merge_commit,
            'error': self.error
        }


class ConsolidationOutcome(Enum):
    """Per-worktree consolidation outcome."""
    MERGED = "merged"
    CONFLICTED = "conflicted"
    SKIPPED = "skipped"


@dataclass
class ConsolidationResult:
    """
    Result of consolidating one worktree.

    Attributes:
        worktree_id: Worktree that was consolidated
        task_id: Owning task (None if the worktree was unknown)
        branch: Branch that was merged (None if unknown)
        outcome: merged / conflicted / skipped
        reason: Why the worktree was not merged
        merge_commit: Merge commit SHA on success
        conflicting_files: Files that conflicted
        notes: Additional diagnostics
    """
    worktree_id: str
    outcome: ConsolidationOutcome
    task_id: Optional[str] = None
    branch: Optional[str] = None
    reason: Optional[str] = None
    merge_commit: Optional[str] = None
    conflicting_files: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == ConsolidationOutcome.MERGED


def all_merged(results: Iterable[ConsolidationResult]) -> bool:
    """Aggregate success flag for a consolidation run."""
    return all(result.success for result in results)


class WorktreeManager:
    """
    Manages git worktrees for parallel execution isolation.

    Creates one worktree per task, allowing multiple agents to work on
    different tasks simultaneously without touching a shared working copy.
    The manager is the only owner of Worktree records.
    """

    def __init__(
        self,
        project_path: str,
        vcs: Optional[VersionControl] = None,
        config: Optional[ParallelConfig] = None
    ):
        """
        Initialize worktree manager.

        Args:
            project_path: Path to project repository
            vcs: Version control backend (defaults to git in project_path)
            config: Parallel execution settings
        """
        self.project_path = Path(project_path)
        self.config = config or ParallelConfig()
        self.vcs = vcs or GitVersionControl(
            str(self.project_path),
            command_timeout=self.config.git_command_timeout
        )
        self._worktrees: Dict[str, Worktree] = {}
        self._allocation_lock = asyncio.Lock()
        self._merge_lock = asyncio.Lock()
        self._worktree_locks: Dict[str, asyncio.Lock] = {}
        logger.info(
            f"WorktreeManager initialized for {self.project_path} "
            f"(max_worktrees={self.config.max_worktrees})"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_worktrees(self) -> int:
        return self.config.max_worktrees

    @property
    def live_count(self) -> int:
        return sum(1 for wt in self._worktrees.values() if wt.is_live)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_worktrees - self.live_count)

    def list_worktrees(self, status: Optional[WorktreeStatus] = None) -> List[Worktree]:
        """
        List tracked worktrees.

        Args:
            status: Only return worktrees in this status

        Returns:
            List of Worktree objects
        """
        return [wt for wt in self._worktrees.values() if status is None or wt.status == status]

    def get_worktree(self, worktree_id: str) -> Optional[Worktree]:
        return self._worktrees.get(worktree_id)

    def get_worktree_for_task(self, task_id: str) -> Optional[Worktree]:
        """Get the most recent worktree created for a task."""
        matches = [wt for wt in self._worktrees.values() if wt.task_id == task_id]
        return matches[-1] if matches else None

    def get_worktree_status(self) -> Dict[str, Any]:
        """
        Get current worktree status.

        Returns:
            Dict with worktree counts per status, capacity and per-worktree info
        """
        counts = {status.value: 0 for status in WorktreeStatus}
        for wt in self._worktrees.values():
            counts[wt.status.value] += 1

        return {
            'total_worktrees': len(self._worktrees),
            'live_worktrees': self.live_count,
            'max_worktrees': self.max_worktrees,
            'available_slots': self.available_slots,
            'by_status': counts,
            'worktrees': [wt.to_dict() for wt in self._worktrees.values()]
        }

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_worktree(
        self,
        task_id: str,
        base_branch: Optional[str] = None,
        branch_prefix: Optional[str] = None,
        work_dir: Optional[str] = None
    ) -> Worktree:
        """
        Create a new worktree for a task.

        Args:
            task_id: Task ID
            base_branch: Branch to fork from (defaults to config.base_branch)
            branch_prefix: Prefix for the branch name (defaults to config.branch_prefix)
            work_dir: Working copy path (defaults to <worktree_dir>/<task_id>)

        Returns:
            Worktree in ACTIVE status

        Raises:
            WorktreeCollisionError: If the task, branch or path is already taken
            WorktreeCapacityError: If the live worktree cap is reached
            BaseBranchError: If the base branch is missing or mid-merge
            GitCommandError: If worktree creation fails or times out
        """
        base_branch = base_branch or self.config.base_branch
        prefix = self.config.branch_prefix if branch_prefix is None else branch_prefix
        safe_id = self._sanitize_branch_name(task_id)
        branch = f"{prefix}{safe_id}"
        if work_dir:
            path = Path(work_dir)
        else:
            path = self.project_path / self.config.worktree_dir / safe_id

        logger.info(f"Creating worktree for task {task_id}: branch {branch} from {base_branch}")

        worktree = await self._reserve(task_id, branch, base_branch, path)

        # Destroy requests for a creating worktree wait until it settles
        async with self._worktree_locks[worktree.id]:
            try:
                await self._validate_target(worktree)
            except (WorktreeCollisionError, BaseBranchError, asyncio.CancelledError):
                self._release(worktree)
                raise
            except GitCommandError as e:
                logger.error(f"Could not validate worktree target for task {task_id}: {e}")
                self._fail(worktree, str(e))
                raise

            try:
                await asyncio.wait_for(self._provision(worktree), timeout=self.config.operation_timeout)
            except asyncio.TimeoutError:
                error = GitCommandError(
                    'create_worktree', None, f"Timed out after {self.config.operation_timeout}s"
                )
                await self._rollback(worktree)
                self._fail(worktree, str(error))
                raise error
            except GitCommandError as e:
                logger.error(f"Failed to create worktree for task {task_id}: {e}")
                await self._rollback(worktree)
                self._fail(worktree, str(e))
                raise
            except asyncio.CancelledError:
                logger.warning(f"Worktree creation for task {task_id} cancelled, rolling back")
                await self._rollback(worktree)
                self._fail(worktree, "cancelled")
                raise

            self._set_status(worktree, WorktreeStatus.ACTIVE)

        logger.info(f"Worktree creation complete: {worktree.path}")
        return worktree

    async def _reserve(self, task_id: str, branch: str, base_branch: str, path: Path) -> Worktree:
        """Check collisions and capacity, and claim a slot atomically."""
        async with self._allocation_lock:
            for existing in self._worktrees.values():
                if not existing.is_live:
                    continue
                if existing.task_id == task_id:
                    raise WorktreeCollisionError(
                        task_id, branch, f"task already has live worktree {existing.id}"
                    )
                if existing.branch == branch:
                    raise WorktreeCollisionError(
                        task_id, branch, f"branch already used by worktree {existing.id}"
                    )

            live = self.live_count
            if live >= self.max_worktrees:
                logger.warning(f"Worktree cap reached ({live}/{self.max_worktrees}), rejecting task {task_id}")
                raise WorktreeCapacityError(task_id, self.max_worktrees, live)

            now = datetime.now()
            worktree = Worktree(
                id=f"wt-{uuid.uuid4().hex[:12]}",
                task_id=task_id,
                branch=branch,
                base_branch=base_branch,
                path=str(path),
                status=WorktreeStatus.CREATING,
                created_at=now,
                updated_at=now
            )
            self._worktrees[worktree.id] = worktree
            self._worktree_locks[worktree.id] = asyncio.Lock()
            return worktree

    def _release(self, worktree: Worktree) -> None:
        """Drop a reservation that never touched version control."""
        self._worktrees.pop(worktree.id, None)
        self._worktree_locks.pop(worktree.id, None)

    async def _validate_target(self, worktree: Worktree) -> None:
        if not await self.vcs.branch_exists(worktree.base_branch):
            raise BaseBranchError(worktree.base_branch, "branch does not exist")
        if await self.vcs.has_unmerged_paths():
            raise BaseBranchError(worktree.base_branch, "repository has unresolved merge conflicts")
        if await self.vcs.branch_exists(worktree.branch):
            raise WorktreeCollisionError(worktree.task_id, worktree.branch, "branch already exists")
        if Path(worktree.path).exists():
            raise WorktreeCollisionError(
                worktree.task_id, worktree.branch, f"path already exists: {worktree.path}"
            )

    async def _provision(self, worktree: Worktree) -> None:
        await self.vcs.create_branch(worktree.branch, worktree.base_branch)
        await self.vcs.add_worktree(Path(worktree.path), worktree.branch)

    async def _rollback(self, worktree: Worktree) -> None:
        """Best-effort removal of anything a failed creation left behind."""
        path = Path(worktree.path)
        try:
            await self.vcs.remove_worktree(path, force=True)
        except GitCommandError as e:
            logger.debug(f"Rollback: worktree remove failed for {path}: {e}")
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        try:
            await self.vcs.prune_worktrees()
        except GitCommandError as e:
            logger.warning(f"Rollback: worktree prune failed: {e}")
        try:
            if await self.vcs.branch_exists(worktree.branch):
                await self.vcs.delete_branch(worktree.branch, force=True)
        except GitCommandError as e:
            logger.warning(f"Rollback: could not delete branch {worktree.branch}: {e}")

    # ------------------------------------------------------------------
    # Status bookkeeping
    # ------------------------------------------------------------------

    def _set_status(self, worktree: Worktree, status: WorktreeStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[worktree.status]:
            raise ValueError(
                f"Illegal worktree transition {worktree.status.value} -> {status.value} ({worktree.id})"
            )
        logger.debug(f"Worktree {worktree.id}: {worktree.status.value} -> {status.value}")
        worktree.status = status
        worktree.updated_at = datetime.now()

    def _fail(self, worktree: Worktree, error: str) -> None:
        worktree.error = error
        self._set_status(worktree, WorktreeStatus.FAILED)

    # ------------------------------------------------------------------
    # Destruction
    # ------------------------------------------------------------------

    async def destroy_worktree(self, worktree_id: str, delete_branch: Optional[bool] = None) -> None:
        """
        Remove a worktree and clean up resources.

        Unknown or already destroyed worktrees are a no-op. Failed worktrees
        keep their status; any leftover directory or branch is removed.

        Args:
            worktree_id: Worktree ID
            delete_branch: Delete the branch too (defaults to config.delete_branch_on_destroy)

        A removal that fails or times out marks the worktree failed, which
        frees its slot; calling destroy again retries the leftover cleanup.

        Raises:
            GitCommandError: If removal fails or times out
        """
        worktree = self._worktrees.get(worktree_id)
        if worktree is None or worktree.status == WorktreeStatus.DESTROYED:
            logger.info(f"No live worktree {worktree_id}, nothing to clean up")
            return

        if delete_branch is None:
            delete_branch = self.config.delete_branch_on_destroy

        async with self._worktree_locks[worktree_id]:
            # Creation may have released the reservation while we waited
            if worktree_id not in self._worktrees or worktree.status == WorktreeStatus.DESTROYED:
                return
            logger.info(f"Cleaning up worktree {worktree_id} for task {worktree.task_id}")
            try:
                await asyncio.wait_for(
                    self._remove(worktree, delete_branch),
                    timeout=self.config.operation_timeout
                )
            except asyncio.TimeoutError:
                error = GitCommandError(
                    'destroy_worktree', None, f"Timed out after {self.config.operation_timeout}s"
                )
                self._mark_destroy_failed(worktree, str(error))
                raise error
            except GitCommandError as e:
                self._mark_destroy_failed(worktree, str(e))
                raise

            if worktree.status != WorktreeStatus.FAILED:
                self._set_status(worktree, WorktreeStatus.DESTROYED)
            logger.info(f"Worktree cleanup complete for {worktree_id}")

    def _mark_destroy_failed(self, worktree: Worktree, error: str) -> None:
        logger.error(f"Cleanup of worktree {worktree.id} failed: {error}")
        if worktree.status == WorktreeStatus.FAILED:
            worktree.error = error
            worktree.updated_at = datetime.now()
        else:
            self._fail(worktree, error)

    async def _remove(self, worktree: Worktree, delete_branch: bool) -> None:
        path = Path(worktree.path)
        if path.exists():
            try:
                await self.vcs.remove_worktree(path, force=True)
            except GitCommandError as e:
                logger.warning(f"Git worktree remove failed: {e}")
                if path.exists():
                    logger.info("Attempting manual directory cleanup")
                    shutil.rmtree(path, ignore_errors=True)
                await self.vcs.prune_worktrees()
        else:
            logger.warning(f"Worktree directory already removed: {path}")
            await self.vcs.prune_worktrees()

        if not delete_branch:
            return
        try:
            if await self.vcs.branch_exists(worktree.branch):
                await self.vcs.delete_branch(worktree.branch, force=True)
            else:
                logger.info(f"Branch {worktree.branch} already deleted")
        except GitCommandError as e:
            logger.warning(f"Could not delete branch {worktree.branch}: {e}")

    async def cleanup_consolidated(self) -> List[str]:
        """Destroy every consolidated worktree and return their ids."""
        cleaned = []
        for worktree in self.list_worktrees(WorktreeStatus.CONSOLIDATED):
            await self.destroy_worktree(worktree.id)
            cleaned.append(worktree.id)
        return cleaned

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate_worktrees(
        self,
        worktree_ids: List[str],
        squash: Optional[bool] = None
    ) -> List[ConsolidationResult]:
        """
        Merge worktrees back into their base branches.

        Each worktree is handled independently: a conflict or failure in
        one does not stop the others.

        Args:
            worktree_ids: Worktrees to consolidate
            squash: Squash commits (defaults to config.squash_merges)

        Returns:
            One ConsolidationResult per requested id, in order
        """
        if squash is None:
            squash = self.config.squash_merges

        logger.info(f"Consolidating {len(worktree_ids)} worktrees (squash={squash})")
        results = []
        for worktree_id in worktree_ids:
            results.append(await self._consolidate_one(worktree_id, squash))

        merged = sum(1 for r in results if r.success)
        logger.info(f"Consolidation complete: {merged}/{len(results)} merged")
        return results

    async def _consolidate_one(self, worktree_id: str, squash: bool) -> ConsolidationResult:
        worktree = self._worktrees.get(worktree_id)
        if worktree is None:
            logger.warning(f"No worktree found with id {worktree_id}")
            return ConsolidationResult(
                worktree_id=worktree_id,
                outcome=ConsolidationOutcome.SKIPPED,
                reason="worktree not found"
            )

        async with self._worktree_locks[worktree_id]:
            if worktree.status != WorktreeStatus.ACTIVE:
                return self._result(
                    worktree, ConsolidationOutcome.SKIPPED, reason=f"status is {worktree.status.value}"
                )

            self._set_status(worktree, WorktreeStatus.MERGING)
            try:
                async with self._merge_lock:
                    try:
                        merge_commit = await asyncio.wait_for(
                            self._merge(worktree, squash),
                            timeout=self.config.operation_timeout
                        )
                    except (asyncio.TimeoutError, asyncio.CancelledError):
                        await self._abort_interrupted_merge(worktree)
                        raise
            except asyncio.CancelledError:
                self._fail(worktree, "consolidation cancelled")
                raise
            except WorktreeConflictError as e:
                self._set_status(worktree, WorktreeStatus.ACTIVE)
                worktree.error = str(e)
                return self._result(
                    worktree,
                    ConsolidationOutcome.CONFLICTED,
                    reason="merge conflict",
                    conflicting_files=e.files,
                    notes=[f"Resolve manually in branch {worktree.branch}"]
                )
            except _MissingBranch:
                self._fail(worktree, f"branch {worktree.branch} is missing")
                return self._result(worktree, ConsolidationOutcome.SKIPPED, reason="branch missing")
            except asyncio.TimeoutError:
                message = f"consolidate_worktrees timed out after {self.config.operation_timeout}s"
                logger.error(f"Merge of {worktree.branch} {message}")
                self._fail(worktree, message)
                return self._result(worktree, ConsolidationOutcome.SKIPPED, reason=message)
            except GitCommandError as e:
                logger.error(f"Merge failed for worktree {worktree_id}: {e}")
                self._fail(worktree, str(e))
                return self._result(
                    worktree,
                    ConsolidationOutcome.SKIPPED,
                    reason=f"{e.operation} failed (exit {e.exit_code})",
                    notes=[e.stderr] if e.stderr else []
                )

            worktree.merge_commit = merge_commit
            worktree.consolidated_at = datetime.now()
            worktree.error = None
            self._set_status(worktree, WorktreeStatus.CONSOLIDATED)
            return self._result(worktree, ConsolidationOutcome.MERGED, merge_commit=merge_commit)

    async def _merge(self, worktree: Worktree, squash: bool) -> str:
        if not await self.vcs.branch_exists(worktree.branch):
            raise _MissingBranch()

        worktree_path = Path(worktree.path)
        if worktree_path.exists() and await self.vcs.has_uncommitted_changes(cwd=worktree_path):
            logger.info(f"Committing uncommitted changes in worktree {worktree.id}")
            await self.vcs.commit_all(
                worktree_path,
                f"Auto-commit changes before merge (task {worktree.task_id})"
            )

        message = f"Merge task {worktree.task_id}: {worktree.branch}"
        return await self.vcs.merge(worktree.branch, worktree.base_branch, message, squash=squash)

    async def _abort_interrupted_merge(self, worktree: Worktree) -> None:
        """Restore the base working copy after a merge was killed mid-way."""
        logger.warning(f"Merge of {worktree.branch} interrupted, aborting in base working copy")
        try:
            await self.vcs.abort_merge()
        except GitCommandError as e:
            logger.error(f"Could not abort interrupted merge of {worktree.branch}: {e}")

    def _result(self, worktree: Worktree, outcome: ConsolidationOutcome, **kwargs) -> ConsolidationResult:
        return ConsolidationResult(
            worktree_id=worktree.id,
            task_id=worktree.task_id,
            branch=worktree.branch,
            outcome=outcome,
            **kwargs
        )

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def _sanitize_branch_name(self, name: str) -> str:
        """
        Sanitize a task id into a valid git branch / directory component.
        Windows-safe: handles reserved names and special characters.

        Args:
            name: Task id to sanitize

        Returns:
            Sanitized name (lowercase, no spaces, valid characters)
        """
        branch = name.lower()
        branch = branch.replace(' ', '-').replace('_', '-')
        branch = re.sub(r'[^a-z0-9\-.]', '', branch)
        branch = re.sub(r'-+', '-', branch)
        # git forbids ".." anywhere in a ref
        branch = re.sub(r'\.{2,}', '.', branch)
        branch = branch.strip('-.')

        reserved_names = ['con', 'prn', 'aux', 'nul']
        reserved_names += [f'com{i}' for i in range(1, 10)]
        reserved_names += [f'lpt{i}' for i in range(1, 10)]
        if branch in reserved_names:
            branch = f'task-{branch}'

        max_length = 100
        if len(branch) > max_length:
            branch = branch[:max_length].rstrip('-.')

        if not branch:
            branch = 'task'

        return branch


class _MissingBranch(Exception):
    """Internal signal: the worktree's branch no longer exists."""
    pass
