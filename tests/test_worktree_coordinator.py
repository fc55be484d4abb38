"""
Tests for IsolationCoordinator

Runs analyzed task sets through worktrees backed by the in-memory
version control fake, with scripted task runners.
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from paraflow.config import ParallelConfig
from paraflow.parallel.dependency_analyzer import analyze_dependencies
from paraflow.parallel.dependency_graph import DependencyGraph, Task
from paraflow.parallel.worktree_coordinator import IsolationCoordinator, TaskExecutionResult
from paraflow.parallel.worktree_manager import WorktreeManager, WorktreeStatus


def diamond_tasks():
    return [
        Task(id="1"),
        Task(id="2", dependencies=["1"]),
        Task(id="3", dependencies=["1"]),
        Task(id="4", dependencies=["2", "3"]),
    ]


class ScriptedRunner:
    """Task runner that records calls and fails chosen tasks."""

    def __init__(self, fail=None, raise_on=None, delay=0.0):
        self.fail = set(fail or [])
        self.raise_on = set(raise_on or [])
        self.delay = delay
        self.calls = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, task, worktree):
        self.calls.append((task.id, worktree.id))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
            if task.id in self.raise_on:
                raise RuntimeError(f"agent crashed on {task.id}")
            if task.id in self.fail:
                return TaskExecutionResult(task_id=task.id, success=False, error="tests failed")
            return TaskExecutionResult(task_id=task.id, success=True, output=f"done {task.id}")
        finally:
            self.running -= 1


class TestExecuteAnalysis:
    """Test level-by-level execution."""

    @pytest.mark.asyncio
    async def test_diamond_runs_level_by_level(self, manager, fake_vcs):
        """Test diamond executes in three batches and merges every task."""
        print("\n=== Test: Diamond Execution ===")

        runner = ScriptedRunner()
        coordinator = IsolationCoordinator(manager, runner)

        result = await coordinator.execute_analysis(analyze_dependencies(diamond_tasks()))

        print(f"Batches: {[b.task_ids for b in result.batch_results]}")

        assert result.success
        assert result.completed == ["1", "2", "3", "4"]
        assert result.failed == []
        assert result.blocked == []
        assert [b.task_ids for b in result.batch_results] == [["1"], ["2", "3"], ["4"]]
        assert [b.level for b in result.batch_results] == [0, 1, 2]
        assert [b.batch_number for b in result.batch_results] == [1, 2, 3]
        assert [branch for branch, _ in fake_vcs.merged] == [
            "parallel/task-1", "parallel/task-2", "parallel/task-3", "parallel/task-4"
        ]
        # Merged worktrees are cleaned up
        assert manager.live_count == 0
        assert len(manager.list_worktrees(WorktreeStatus.DESTROYED)) == 4

        print("[PASS]")

    @pytest.mark.asyncio
    async def test_batches_chunked_to_cap(self, tmp_path, fake_vcs):
        """A wide level is split into sub-batches no larger than the cap."""
        config = ParallelConfig(max_worktrees=2)
        manager = WorktreeManager(str(tmp_path), vcs=fake_vcs, config=config)
        runner = ScriptedRunner(delay=0.01)
        coordinator = IsolationCoordinator(manager, runner)

        tasks = [Task(id=f"t{i}") for i in range(5)]
        result = await coordinator.execute_analysis(analyze_dependencies(tasks))

        assert result.success
        assert [len(b.task_ids) for b in result.batch_results] == [2, 2, 1]
        assert runner.max_running == 2
        assert len(result.completed) == 5

    @pytest.mark.asyncio
    async def test_priority_orders_ready_tasks(self, tmp_path, fake_vcs):
        """Tasks unblocking more work run first."""
        config = ParallelConfig(max_worktrees=1)
        manager = WorktreeManager(str(tmp_path), vcs=fake_vcs, config=config)
        coordinator = IsolationCoordinator(manager, ScriptedRunner())

        tasks = [
            Task(id="x"),
            Task(id="y"),
            Task(id="z1", dependencies=["y"]),
            Task(id="z2", dependencies=["y"]),
        ]
        result = await coordinator.execute_analysis(analyze_dependencies(tasks))

        assert result.batch_results[0].task_ids == ["y"]
        assert result.batch_results[1].task_ids == ["x"]
        assert result.success

    @pytest.mark.asyncio
    async def test_failed_task_preserved_and_dependents_blocked(self, manager, fake_vcs):
        """A failed task keeps its worktree and blocks its dependents."""
        print("\n=== Test: Failure Preservation ===")

        runner = ScriptedRunner(fail=["2"])
        coordinator = IsolationCoordinator(manager, runner)

        result = await coordinator.execute_analysis(analyze_dependencies(diamond_tasks()))

        assert not result.success
        assert result.completed == ["1", "3"]
        assert result.failed == ["2"]
        assert result.blocked == ["4"]

        level_one = result.batch_results[1]
        assert not level_one.success
        assert len(level_one.preserved_worktrees) == 1
        preserved = manager.get_worktree(level_one.preserved_worktrees[0])
        assert preserved.task_id == "2"
        assert preserved.status == WorktreeStatus.ACTIVE
        assert Path(preserved.path).exists()
        assert "Task 2: tests failed" in level_one.errors

        print("[PASS]")

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_failure(self, manager):
        coordinator = IsolationCoordinator(manager, ScriptedRunner(raise_on=["a"]))

        result = await coordinator.execute_analysis(analyze_dependencies([Task(id="a"), Task(id="b")]))

        assert result.failed == ["a"]
        assert result.completed == ["b"]
        task_result = next(r for r in result.batch_results[0].task_results if r.task_id == "a")
        assert not task_result.success
        assert "agent crashed on a" in task_result.error

    @pytest.mark.asyncio
    async def test_task_timeout(self, tmp_path, fake_vcs):
        config = ParallelConfig(max_worktrees=2, task_timeout=0.05)
        manager = WorktreeManager(str(tmp_path), vcs=fake_vcs, config=config)
        coordinator = IsolationCoordinator(manager, ScriptedRunner(delay=5))

        result = await coordinator.execute_analysis(analyze_dependencies([Task(id="slow")]))

        assert result.failed == ["slow"]
        task_result = result.batch_results[0].task_results[0]
        assert task_result.error.startswith("Timed out")
        assert result.batch_results[0].preserved_worktrees

    @pytest.mark.asyncio
    async def test_conflicted_merge_not_completed(self, manager, fake_vcs):
        """A task whose merge conflicts is preserved and not completed."""
        fake_vcs.conflicts["parallel/task-b"] = ["README.md"]
        coordinator = IsolationCoordinator(manager, ScriptedRunner())

        tasks = [Task(id="a"), Task(id="b"), Task(id="c", dependencies=["b"])]
        result = await coordinator.execute_analysis(analyze_dependencies(tasks))

        assert result.completed == ["a"]
        assert result.failed == ["b"]
        assert result.blocked == ["c"]
        batch = result.batch_results[0]
        conflicted = manager.get_worktree(batch.preserved_worktrees[0])
        assert conflicted.task_id == "b"
        assert conflicted.status == WorktreeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_allocation_failure_becomes_failed_result(self, manager, fake_vcs):
        fake_vcs.fail("add_worktree")
        runner = ScriptedRunner()
        coordinator = IsolationCoordinator(manager, runner)

        result = await coordinator.execute_analysis(analyze_dependencies([Task(id="a")]))

        assert result.failed == ["a"]
        assert runner.calls == []
        assert result.batch_results[0].task_results[0].error.startswith("Worktree allocation failed")

    @pytest.mark.asyncio
    async def test_already_completed_tasks_skipped(self, manager):
        runner = ScriptedRunner()
        coordinator = IsolationCoordinator(manager, runner)

        tasks = [Task(id="a", completed=True), Task(id="b", dependencies=["a"])]
        result = await coordinator.execute_analysis(analyze_dependencies(tasks))

        assert [task_id for task_id, _ in runner.calls] == ["b"]
        assert result.completed == ["a", "b"]
        assert result.success

    @pytest.mark.asyncio
    async def test_stop_request(self, manager):
        """Stop requested during a batch halts before the next one."""
        coordinator = None

        async def on_progress(event):
            if event['type'] == 'batch_complete':
                coordinator.request_stop()

        coordinator = IsolationCoordinator(manager, ScriptedRunner(), progress_callback=on_progress)
        tasks = [Task(id="a"), Task(id="b", dependencies=["a"])]

        result = await coordinator.execute_analysis(analyze_dependencies(tasks))

        assert result.stopped_early
        assert not result.success
        assert result.completed == ["a"]
        assert len(result.batch_results) == 1

    @pytest.mark.asyncio
    async def test_progress_events(self, manager):
        events = []

        async def on_progress(event):
            events.append(event['type'])

        coordinator = IsolationCoordinator(manager, ScriptedRunner(), progress_callback=on_progress)
        await coordinator.execute_analysis(analyze_dependencies([Task(id="a")]))

        assert events == ["batch_start", "task_start", "task_complete", "batch_complete"]


class TestExecuteReady:
    """Test readiness-driven execution."""

    @pytest.mark.asyncio
    async def test_ready_mode_skips_placeholders(self, manager):
        """Placeholders never run and their dependents stay blocked."""
        print("\n=== Test: Ready Mode ===")

        graph = DependencyGraph()
        graph.add_task("a")
        graph.add_task("b", ["a"])
        graph.add_task("c", ["ghost"])

        runner = ScriptedRunner()
        coordinator = IsolationCoordinator(manager, runner)
        result = await coordinator.execute_ready(graph)

        assert result.completed == ["a", "b"]
        assert result.blocked == ["c"]
        assert result.failed == []
        assert not result.success
        assert "ghost" not in [task_id for task_id, _ in runner.calls]
        assert [b.task_ids for b in result.batch_results] == [["a"], ["b"]]
        assert all(b.level is None for b in result.batch_results)

        print("[PASS]")

    @pytest.mark.asyncio
    async def test_ready_mode_diamond(self, manager):
        graph = DependencyGraph()
        for task in diamond_tasks():
            graph.add_complete_task(task)

        coordinator = IsolationCoordinator(manager, ScriptedRunner(fail=["3"]))
        result = await coordinator.execute_ready(graph)

        assert result.completed == ["1", "2"]
        assert result.failed == ["3"]
        assert result.blocked == ["4"]
