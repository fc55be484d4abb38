"""
Worktree Coordinator
====================

Maps a dependency analysis onto worktree isolation, batch by batch.

Key Features:
- Executes analysis levels in order, chunked to the free worktree slots
- Readiness-driven execution straight from a DependencyGraph
- One worktree per task, tasks run concurrently within a batch
- Consolidates successful tasks and destroys their worktrees
- Preserves worktrees of failed or conflicted tasks for inspection
- Blocks dependents of anything that did not complete
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Awaitable, Set, Sequence
import asyncio
import logging

from paraflow.config import ParallelConfig
from paraflow.parallel.dependency_analyzer import AnalysisResult
from paraflow.parallel.dependency_graph import DependencyGraph, Task
from paraflow.parallel.worktree_manager import (
    WorktreeManager,
    Worktree,
    ConsolidationResult,
    ConsolidationOutcome,
)
from paraflow.parallel.errors import WorktreeError

logger = logging.getLogger(__name__)


@dataclass
class TaskExecutionResult:
    """
    Result of running one task in its worktree.

    Attributes:
        task_id: Task that ran
        success: Whether the runner reported success
        duration: Run time in seconds
        error: Error message if the task failed
        output: Free-form runner output
    """
    task_id: str
    success: bool
    duration: float = 0.0
    error: Optional[str] = None
    output: Optional[str] = None


TaskRunner = Callable[[Task, Worktree], Awaitable[TaskExecutionResult]]


@dataclass
class BatchResult:
    """
    Result of executing a batch.

    Attributes:
        batch_number: Sequence number of the batch (1-based)
        level: Execution level the batch came from (None in ready mode)
        task_ids: Tasks in the batch
        task_results: Results from each task
        consolidation: Per-worktree merge results
        completed: Tasks that ran successfully and merged
        failed: Tasks that did not complete
        preserved_worktrees: Worktree ids left in place for inspection
        errors: List of error messages
        duration: Total execution time in seconds
    """
    batch_number: int
    level: Optional[int]
    task_ids: List[str]
    task_results: List[TaskExecutionResult] = field(default_factory=list)
    consolidation: List[ConsolidationResult] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    preserved_worktrees: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class CoordinationResult:
    """
    Result of coordinating a whole analysis or graph.

    Attributes:
        success: Whether every task completed
        batch_results: Results from each batch
        completed: Tasks completed (including ones completed beforehand)
        failed: Tasks that ran and did not complete
        blocked: Tasks never started because a dependency did not complete
        total_duration: Total execution time in seconds
        stopped_early: Whether a stop request ended execution
    """
    success: bool
    batch_results: List[BatchResult]
    completed: List[str]
    failed: List[str]
    blocked: List[str]
    total_duration: float
    stopped_early: bool = False


class IsolationCoordinator:
    """
    Runs tasks in isolated worktrees following a dependency analysis.

    The runner does the actual task work; the coordinator only allocates,
    consolidates and cleans up worktrees around it.
    """

    def __init__(
        self,
        manager: WorktreeManager,
        runner: TaskRunner,
        progress_callback: Optional[Callable[[Dict], Awaitable[None]]] = None,
        config: Optional[ParallelConfig] = None
    ):
        """
        Initialize isolation coordinator.

        Args:
            manager: Worktree manager that owns the worktrees
            runner: Async callable running one task inside its worktree
            progress_callback: Async callback for progress updates
            config: Parallel execution settings (defaults to the manager's)
        """
        self.manager = manager
        self.runner = runner
        self.progress_callback = progress_callback
        self.config = config or manager.config
        self._stop_requested = False
        self._batch_counter = 0

    def request_stop(self) -> None:
        """Request graceful stop before the next batch."""
        logger.info("Stop requested for isolation coordinator")
        self._stop_requested = True

    async def execute_analysis(self, analysis: AnalysisResult) -> CoordinationResult:
        """
        Execute an analysis level by level.

        Args:
            analysis: Result of DependencyAnalyzer.analyze_dependencies()

        Returns:
            CoordinationResult with overall execution status
        """
        graph = analysis.graph
        logger.info(
            f"Starting coordinated execution: {len(analysis.execution_order)} levels, "
            f"{sum(len(level) for level in analysis.execution_order)} tasks"
        )

        start_time = datetime.now()
        self._stop_requested = False
        self._batch_counter = 0
        batch_results: List[BatchResult] = []
        completed = self._already_completed(graph)
        failed: Set[str] = set()
        blocked: List[str] = []
        stopped = False

        for level_index, level in enumerate(analysis.execution_order):
            if stopped:
                break

            pending = [task_id for task_id in level if task_id not in completed]
            ready = []
            for task_id in pending:
                if graph.can_start(task_id, completed):
                    ready.append(task_id)
                else:
                    logger.warning(f"Task {task_id} blocked: dependencies not completed")
                    blocked.append(task_id)

            ready = self._by_priority(graph, ready)
            while ready:
                size = self._batch_size()
                chunk, ready = ready[:size], ready[size:]
                if self._stop_requested:
                    logger.info("Stop requested, halting coordinated execution")
                    stopped = True
                    break
                result = await self.execute_batch(
                    [graph.get_task(task_id) for task_id in chunk],
                    self._next_batch_number(),
                    level=level_index
                )
                batch_results.append(result)
                completed.update(result.completed)
                failed.update(result.failed)

        return self._finish(start_time, batch_results, completed, failed, blocked, stopped)

    async def execute_ready(self, graph: DependencyGraph) -> CoordinationResult:
        """
        Execute a graph by repeatedly running whatever is ready.

        Placeholder nodes (referenced but never defined) never run, so their
        dependents end up blocked.

        Args:
            graph: Dependency graph of tasks

        Returns:
            CoordinationResult with overall execution status
        """
        graph.get_execution_order()
        placeholders = set(graph.get_placeholders())
        logger.info(f"Starting ready-driven execution of {len(graph) - len(placeholders)} tasks")

        start_time = datetime.now()
        self._stop_requested = False
        self._batch_counter = 0
        batch_results: List[BatchResult] = []
        completed = self._already_completed(graph)
        failed: Set[str] = set()
        stopped = False

        while True:
            ready = graph.get_next_tasks(completed, failed | placeholders)
            if not ready:
                break
            if self._stop_requested:
                logger.info("Stop requested, halting ready-driven execution")
                stopped = True
                break

            ready = self._by_priority(graph, ready)[:self._batch_size()]
            result = await self.execute_batch(
                [graph.get_task(task_id) for task_id in ready],
                self._next_batch_number()
            )
            batch_results.append(result)
            completed.update(result.completed)
            failed.update(result.failed)

        blocked = [
            task_id for task_id in graph.task_ids
            if task_id not in placeholders and task_id not in completed and task_id not in failed
        ]
        if stopped:
            # Not started because of the stop, not because of a dependency
            blocked = [task_id for task_id in blocked if not graph.can_start(task_id, completed)]
        return self._finish(start_time, batch_results, completed, failed, blocked, stopped)

    async def execute_batch(
        self,
        tasks: Sequence[Task],
        batch_number: int,
        level: Optional[int] = None
    ) -> BatchResult:
        """
        Execute one batch of independent tasks in isolated worktrees.

        Args:
            tasks: Tasks to run concurrently
            batch_number: Batch sequence number
            level: Execution level the batch belongs to

        Returns:
            BatchResult with execution details
        """
        task_ids = [task.id for task in tasks]
        logger.info(f"Executing batch {batch_number}: {len(tasks)} tasks {task_ids}")
        start_time = datetime.now()
        result = BatchResult(batch_number=batch_number, level=level, task_ids=task_ids)

        await self._notify_progress("batch_start", {
            "batch_number": batch_number,
            "level": level,
            "task_ids": task_ids
        })

        allocations = await asyncio.gather(
            *[self.manager.create_worktree(task.id) for task in tasks],
            return_exceptions=True
        )

        worktrees: Dict[str, Worktree] = {}
        runs = []
        for task, allocation in zip(tasks, allocations):
            if isinstance(allocation, BaseException):
                logger.error(f"Worktree allocation failed for task {task.id}: {allocation}")
                message = f"Worktree allocation failed: {allocation}"
                result.task_results.append(TaskExecutionResult(task_id=task.id, success=False, error=message))
                result.errors.append(f"Task {task.id}: {message}")
                continue
            worktrees[task.id] = allocation
            runs.append(self._run_task(task, allocation))

        for task_result in await asyncio.gather(*runs):
            result.task_results.append(task_result)
            if not task_result.success:
                result.errors.append(f"Task {task_result.task_id}: {task_result.error}")

        succeeded = {r.task_id for r in result.task_results if r.success}
        to_merge = [worktrees[task_id].id for task_id in task_ids if task_id in succeeded]
        if to_merge:
            result.consolidation = await self.manager.consolidate_worktrees(to_merge)

        merged = set()
        for outcome in result.consolidation:
            if outcome.outcome == ConsolidationOutcome.MERGED:
                merged.add(outcome.task_id)
                await self._destroy(outcome.worktree_id, result)
            else:
                logger.warning(
                    f"Worktree {outcome.worktree_id} for task {outcome.task_id} not merged "
                    f"({outcome.outcome.value}: {outcome.reason}), preserving"
                )
                result.errors.append(f"Task {outcome.task_id}: {outcome.outcome.value} ({outcome.reason})")
                result.preserved_worktrees.append(outcome.worktree_id)

        for task_id in task_ids:
            if task_id in worktrees and task_id not in succeeded:
                result.preserved_worktrees.append(worktrees[task_id].id)

        result.completed = [task_id for task_id in task_ids if task_id in merged]
        result.failed = [task_id for task_id in task_ids if task_id not in merged]
        result.duration = (datetime.now() - start_time).total_seconds()

        logger.info(
            f"Batch {batch_number} completed: {len(result.completed)}/{len(task_ids)} tasks merged, "
            f"duration={result.duration:.1f}s"
        )

        await self._notify_progress("batch_complete", {
            "batch_number": batch_number,
            "success": result.success,
            "completed": result.completed,
            "failed": result.failed,
            "preserved_worktrees": result.preserved_worktrees,
            "duration": result.duration
        })
        return result

    async def _run_task(self, task: Task, worktree: Worktree) -> TaskExecutionResult:
        """Run one task, converting exceptions and timeouts into failed results."""
        await self._notify_progress("task_start", {"task_id": task.id, "worktree_id": worktree.id})
        start_time = datetime.now()
        timeout = self.config.task_timeout

        try:
            if timeout:
                task_result = await asyncio.wait_for(self.runner(task, worktree), timeout=timeout)
            else:
                task_result = await self.runner(task, worktree)
        except asyncio.TimeoutError:
            logger.error(f"Task {task.id} timed out after {timeout}s")
            task_result = TaskExecutionResult(
                task_id=task.id,
                success=False,
                duration=(datetime.now() - start_time).total_seconds(),
                error=f"Timed out after {timeout}s"
            )
        except Exception as e:
            logger.error(f"Task {task.id} failed: {e}", exc_info=True)
            task_result = TaskExecutionResult(
                task_id=task.id,
                success=False,
                duration=(datetime.now() - start_time).total_seconds(),
                error=str(e)
            )

        await self._notify_progress("task_complete", {
            "task_id": task.id,
            "success": task_result.success,
            "duration": task_result.duration,
            "error": task_result.error
        })
        return task_result

    async def _destroy(self, worktree_id: str, result: BatchResult) -> None:
        try:
            await self.manager.destroy_worktree(worktree_id)
        except WorktreeError as e:
            logger.warning(f"Failed to clean up merged worktree {worktree_id}: {e}")
            result.errors.append(f"Cleanup of {worktree_id} failed: {e}")

    def _already_completed(self, graph: DependencyGraph) -> Set[str]:
        return {
            task_id for task_id in graph.task_ids
            if not graph.is_placeholder(task_id) and graph.get_task(task_id).completed
        }

    def _by_priority(self, graph: DependencyGraph, task_ids: List[str]) -> List[str]:
        return sorted(task_ids, key=lambda task_id: graph.get_task(task_id).priority, reverse=True)

    def _batch_size(self) -> int:
        """Free worktree slots; preserved worktrees keep theirs."""
        return max(1, self.manager.available_slots)

    def _next_batch_number(self) -> int:
        self._batch_counter += 1
        return self._batch_counter

    def _finish(
        self,
        start_time: datetime,
        batch_results: List[BatchResult],
        completed: Set[str],
        failed: Set[str],
        blocked: List[str],
        stopped: bool
    ) -> CoordinationResult:
        total_duration = (datetime.now() - start_time).total_seconds()
        success = not failed and not blocked and not stopped
        logger.info(
            f"Coordinated execution finished: {len(completed)} completed, {len(failed)} failed, "
            f"{len(blocked)} blocked, stopped_early={stopped}"
        )
        return CoordinationResult(
            success=success,
            batch_results=batch_results,
            completed=sorted(completed),
            failed=sorted(failed),
            blocked=sorted(blocked),
            total_duration=total_duration,
            stopped_early=stopped
        )

    async def _notify_progress(self, event: str, data: Dict[str, Any]) -> None:
        """Send progress update to callback."""
        if self.progress_callback:
            try:
                await self.progress_callback({
                    'type': event,
                    'timestamp': datetime.now().isoformat(),
                    **data
                })
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
