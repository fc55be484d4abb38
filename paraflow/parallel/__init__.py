"""
Parallel Execution Module
==========================

This module provides dependency analysis for task lists and git worktree
isolation for running independent tasks at the same time.

Main Components:
- DependencyGraph: Task graph with levels, cycles, readiness and exports
- DependencyAnalyzer: Computes execution order, parallel groups and conflicts
- WorktreeManager: Manages git worktrees for isolated parallel execution
- IsolationCoordinator: Runs analyzed batches in worktrees and merges them back

Usage:
    from paraflow.parallel import DependencyAnalyzer, WorktreeManager, IsolationCoordinator

    analysis = DependencyAnalyzer().analyze_dependencies(tasks)
    coordinator = IsolationCoordinator(WorktreeManager(project_path), runner)
    await coordinator.execute_analysis(analysis)
"""

from paraflow.parallel.dependency_graph import DependencyGraph, Task
from paraflow.parallel.dependency_analyzer import DependencyAnalyzer, AnalysisResult, analyze_dependencies
from paraflow.parallel.errors import (
    WorktreeError,
    GitCommandError,
    WorktreeConflictError,
    WorktreeCapacityError,
    WorktreeCollisionError,
    BaseBranchError,
)
from paraflow.parallel.version_control import VersionControl, GitVersionControl
from paraflow.parallel.worktree_manager import (
    WorktreeManager,
    Worktree,
    WorktreeStatus,
    ConsolidationResult,
    ConsolidationOutcome,
    all_merged,
)
from paraflow.parallel.worktree_coordinator import (
    IsolationCoordinator,
    TaskExecutionResult,
    BatchResult,
    CoordinationResult,
)

__all__ = [
    'DependencyGraph',
    'Task',
    'DependencyAnalyzer',
    'AnalysisResult',
    'analyze_dependencies',
    'WorktreeError',
    'GitCommandError',
    'WorktreeConflictError',
    'WorktreeCapacityError',
    'WorktreeCollisionError',
    'BaseBranchError',
    'VersionControl',
    'GitVersionControl',
    'WorktreeManager',
    'Worktree',
    'WorktreeStatus',
    'ConsolidationResult',
    'ConsolidationOutcome',
    'all_merged',
    'IsolationCoordinator',
    'TaskExecutionResult',
    'BatchResult',
    'CoordinationResult',
]
