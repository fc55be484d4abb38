"""
Isolation errors raised by the worktree manager and version control layer.
"""

from typing import List, Optional


class WorktreeError(Exception):
    """Base class for worktree isolation errors."""
    pass


class GitCommandError(WorktreeError):
    """Raised when a version control command fails or times out."""

    def __init__(
        self,
        operation: str,
        exit_code: Optional[int],
        stderr: str = "",
        command: str = "",
        stdout: str = ""
    ):
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.command = command
        status = f"exit {exit_code}" if exit_code is not None else "no exit code"
        message = f"{operation} failed ({status})"
        if command:
            message += f": {command}"
        details = "\n".join(part for part in (stderr, stdout) if part)
        if details:
            message += f"\n{details}"
        super().__init__(message)

    @property
    def output(self) -> str:
        """Combined stderr and stdout, for pattern checks."""
        return f"{self.stderr}\n{self.stdout}"


class WorktreeConflictError(WorktreeError):
    """Raised when a worktree merge has conflicts."""

    def __init__(self, branch: str, files: Optional[List[str]] = None):
        self.branch = branch
        self.files = list(files or [])
        message = f"Merge conflict for branch {branch}"
        if self.files:
            message += f" in {', '.join(self.files)}"
        super().__init__(message)


class WorktreeCapacityError(WorktreeError):
    """Raised when creating a worktree would exceed the concurrency cap."""

    def __init__(self, task_id: str, limit: int, live: int):
        self.task_id = task_id
        self.limit = limit
        self.live = live
        super().__init__(
            f"Cannot create worktree for task {task_id}: {live} of {limit} worktrees in use"
        )


class WorktreeCollisionError(WorktreeError):
    """Raised when a task id, branch or path is already taken."""

    def __init__(self, task_id: str, branch: str, reason: str):
        self.task_id = task_id
        self.branch = branch
        self.reason = reason
        super().__init__(f"Cannot create worktree for task {task_id} (branch {branch}): {reason}")


class BaseBranchError(WorktreeError):
    """Raised when the base branch is missing or not in a mergeable state."""

    def __init__(self, base_branch: str, reason: str):
        self.base_branch = base_branch
        self.reason = reason
        super().__init__(f"Base branch {base_branch} unusable: {reason}")
