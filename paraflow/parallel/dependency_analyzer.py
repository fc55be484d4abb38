"""
Dependency Analyzer
===================

Turns a task list into a parallel execution analysis.

Key Features:
- Builds a DependencyGraph and reports cycles without aborting
- Groups same-level tasks that share an identical dependency set
- Scores each group with a risk tier and a confidence value
- Detects resource conflicts between tasks that could run simultaneously
- Estimates the time saved by running each level in parallel

Structural problems (cycles, self-dependencies, unknown dependency ids,
duplicate task ids) are reported in the result and never raised.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Set, Tuple, FrozenSet, Sequence, Optional
import logging
import time

from paraflow.parallel.dependency_graph import DependencyGraph, Task

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = "1.0.0"

# Confidence policy for parallel groups
CONFLICT_PENALTY = 0.15      # per resource-sharing pair inside the group
GROUP_SIZE_THRESHOLD = 3     # groups up to this size are not penalized for size
SIZE_PENALTY = 0.05          # per member beyond the threshold
HIGH_RISK_CONFIDENCE_CAP = 0.5

# Resource name fragments used to rank conflict severity
CRITICAL_RESOURCES = ("database", "main-config", "auth-system")
HIGH_RISK_RESOURCES = ("api", "cache", "session")


class RiskLevel(Enum):
    """Risk of running a group's tasks together."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConflictKind(Enum):
    """Kinds of conflict reported by the analyzer."""
    RESOURCE = "resource"
    DEPENDENCY_AMBIGUITY = "dependency-ambiguity"


@dataclass(frozen=True)
class ParallelGroup:
    """
    Same-level tasks with an identical dependency set.

    Attributes:
        id: Group identifier
        level: Execution level of every member
        task_ids: Members of the group
        dependencies: The shared dependency set
        reason: Why the members are grouped
        risk: Risk tier for running the members together
        confidence: Confidence in the grouping (0-1)
        estimated_duration: Longest member duration in milliseconds
    """
    id: str
    level: int
    task_ids: Tuple[str, ...]
    dependencies: Tuple[str, ...]
    reason: str
    risk: RiskLevel
    confidence: float
    estimated_duration: int


@dataclass(frozen=True)
class Conflict:
    """
    A potential conflict between tasks.

    Attributes:
        kind: Conflict kind
        description: Human-readable description naming the offending resources
        task_ids: Tasks involved
        shared_resources: Resources both tasks access (resource conflicts only)
        severity: low/medium/high/critical
        resolution: Suggested resolution
    """
    kind: ConflictKind
    description: str
    task_ids: Tuple[str, ...]
    shared_resources: Tuple[str, ...] = ()
    severity: str = "low"
    resolution: str = ""


@dataclass(frozen=True)
class AnalysisMetadata:
    """Aggregate numbers for an analysis run."""
    total_tasks: int
    independent_tasks: int
    max_parallelism: int
    estimated_time_saving: int
    analyzed_at: datetime
    analysis_duration_ms: float
    analysis_version: str = ANALYSIS_VERSION


@dataclass(frozen=True)
class AnalysisResult:
    """
    Immutable snapshot of a dependency analysis.

    Attributes:
        execution_order: Levels in ascending order, each a tuple of task ids
        parallel_groups: Groups of tasks that may run together
        conflicts: Potential conflicts
        cycles: Detected cycles (first id repeated at the end)
        metadata: Aggregate numbers
        missing_dependencies: Ids referenced as dependencies but never defined
        sequential_tasks: Tasks that run alone in their level or sit in a cycle
        critical_path: Longest chain by summed duration
        graph: The graph the analysis was computed from
    """
    execution_order: Tuple[Tuple[str, ...], ...]
    parallel_groups: Tuple[ParallelGroup, ...]
    conflicts: Tuple[Conflict, ...]
    cycles: Tuple[Tuple[str, ...], ...]
    metadata: AnalysisMetadata
    missing_dependencies: Tuple[str, ...] = ()
    sequential_tasks: Tuple[str, ...] = ()
    critical_path: Tuple[str, ...] = ()
    graph: DependencyGraph = field(default_factory=DependencyGraph, compare=False, repr=False)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def group_for(self, task_id: str) -> Optional[ParallelGroup]:
        """Find the parallel group containing a task."""
        for group in self.parallel_groups:
            if task_id in group.task_ids:
                return group
        return None


def assess_conflict_severity(resources: Sequence[str]) -> str:
    """Rank how dangerous it is for two tasks to share these resources."""
    if any(fragment in resource for resource in resources for fragment in CRITICAL_RESOURCES):
        return "critical"
    if any(fragment in resource for resource in resources for fragment in HIGH_RISK_RESOURCES):
        return "high"
    if len(resources) > 2:
        return "medium"
    return "low"


def group_confidence(size: int, conflict_count: int, risk: RiskLevel) -> float:
    """
    Confidence score for a parallel group.

    1.0 for a single, resource-disjoint, acyclic task; each conflicting pair
    costs CONFLICT_PENALTY and each member beyond GROUP_SIZE_THRESHOLD costs
    SIZE_PENALTY. Groups touching a cycle are capped at
    HIGH_RISK_CONFIDENCE_CAP.
    """
    score = 1.0 - CONFLICT_PENALTY * conflict_count - SIZE_PENALTY * max(0, size - GROUP_SIZE_THRESHOLD)
    if risk == RiskLevel.HIGH:
        score = min(score, HIGH_RISK_CONFIDENCE_CAP)
    return round(min(1.0, max(0.0, score)), 2)


class DependencyAnalyzer:
    """
    Analyzes task dependencies for parallel execution.

    Stateless: every call builds its own DependencyGraph, so one analyzer
    can be shared freely.
    """

    def analyze_dependencies(self, tasks: Sequence[Task]) -> AnalysisResult:
        """
        Analyze task dependencies and generate an execution plan.

        Args:
            tasks: Tasks to analyze

        Returns:
            AnalysisResult snapshot
        """
        started = time.perf_counter()
        logger.info(f"Analyzing dependencies for {len(tasks)} tasks")

        graph = self.build_graph(tasks)

        cycles = graph.detect_cycles()
        cyclic_ids: Set[str] = {task_id for cycle in cycles for task_id in cycle}

        missing = graph.get_placeholders()
        if missing:
            logger.warning(f"Tasks reference undefined dependencies: {missing}")
        missing_set = set(missing)

        execution_order = [
            [task_id for task_id in level if task_id not in missing_set]
            for level in graph.get_execution_order()
        ]
        execution_order = [level for level in execution_order if level]

        groups = self.generate_parallel_groups(graph, execution_order, cyclic_ids)
        conflicts = self.detect_conflicts(graph, tasks)

        task_ids = [task_id for level in execution_order for task_id in level]
        independent = sum(1 for task_id in task_ids if not graph.get_node(task_id).dependencies)
        sequential = [
            task_id for level in execution_order for task_id in level
            if len(level) == 1 or task_id in cyclic_ids
        ]

        metadata = AnalysisMetadata(
            total_tasks=len(tasks),
            independent_tasks=independent,
            max_parallelism=max((len(level) for level in execution_order), default=0),
            estimated_time_saving=self.estimate_time_saving(graph, execution_order),
            analyzed_at=datetime.now(timezone.utc),
            analysis_duration_ms=(time.perf_counter() - started) * 1000
        )

        critical_path = [task_id for task_id in graph.get_critical_path() if task_id not in missing_set]

        logger.info(
            f"Analysis complete: {len(execution_order)} levels, {len(groups)} groups, "
            f"{len(conflicts)} conflicts, {len(cycles)} cycles"
        )

        return AnalysisResult(
            execution_order=tuple(tuple(level) for level in execution_order),
            parallel_groups=tuple(groups),
            conflicts=tuple(conflicts),
            cycles=tuple(tuple(cycle) for cycle in cycles),
            metadata=metadata,
            missing_dependencies=tuple(missing),
            sequential_tasks=tuple(sequential),
            critical_path=tuple(critical_path),
            graph=graph
        )

    def build_graph(self, tasks: Sequence[Task]) -> DependencyGraph:
        """Build a dependency graph from complete task records."""
        graph = DependencyGraph()
        for task in tasks:
            graph.add_complete_task(task)
        return graph

    def generate_parallel_groups(
        self,
        graph: DependencyGraph,
        execution_order: List[List[str]],
        cyclic_ids: Set[str]
    ) -> List[ParallelGroup]:
        """
        Group same-level tasks that share an identical dependency set.

        Args:
            graph: Dependency graph
            execution_order: Levels of task ids
            cyclic_ids: Tasks that take part in a detected cycle

        Returns:
            List of ParallelGroup objects
        """
        groups: List[ParallelGroup] = []

        for task_ids in execution_order:
            level = graph.get_level(task_ids[0])
            buckets: Dict[FrozenSet[str], List[str]] = {}
            for task_id in task_ids:
                buckets.setdefault(frozenset(graph.get_node(task_id).dependencies), []).append(task_id)

            for index, (deps, members) in enumerate(buckets.items()):
                shared_deps = sorted(deps)
                if shared_deps:
                    reason = f"Share dependencies: {','.join(shared_deps)}"
                else:
                    reason = "No dependencies"

                conflict_count = self._count_internal_conflicts(graph, members)
                if any(task_id in cyclic_ids for task_id in members):
                    risk = RiskLevel.HIGH
                elif conflict_count:
                    risk = RiskLevel.MEDIUM
                else:
                    risk = RiskLevel.LOW

                groups.append(ParallelGroup(
                    id=f"level-{level}-group-{index}",
                    level=level,
                    task_ids=tuple(members),
                    dependencies=tuple(shared_deps),
                    reason=reason,
                    risk=risk,
                    confidence=group_confidence(len(members), conflict_count, risk),
                    estimated_duration=max(graph.get_task(task_id).duration for task_id in members)
                ))

        return groups

    def _count_internal_conflicts(self, graph: DependencyGraph, task_ids: List[str]) -> int:
        resources = [graph.get_task(task_id).resource_set for task_id in task_ids]
        count = 0
        for i in range(len(resources)):
            for j in range(i + 1, len(resources)):
                if resources[i] & resources[j]:
                    count += 1
        return count

    def detect_conflicts(self, graph: DependencyGraph, tasks: Sequence[Task]) -> List[Conflict]:
        """
        Detect potential conflicts between tasks.

        Resource conflicts are only reported for pairs with no dependency
        path between them, since only those can run at the same time.

        Args:
            graph: Dependency graph built from tasks
            tasks: Task records as given (duplicates included)

        Returns:
            List of Conflict objects
        """
        conflicts: List[Conflict] = []

        task_ids = [task_id for task_id in graph.task_ids if not graph.is_placeholder(task_id)]
        ancestors = {task_id: graph.get_ancestors(task_id) for task_id in task_ids}

        for i, first in enumerate(task_ids):
            first_resources = graph.get_task(first).resource_set
            if not first_resources:
                continue
            for second in task_ids[i + 1:]:
                if first in ancestors[second] or second in ancestors[first]:
                    continue
                shared = sorted(first_resources & graph.get_task(second).resource_set)
                if not shared:
                    continue
                conflicts.append(Conflict(
                    kind=ConflictKind.RESOURCE,
                    description=f"Both tasks access: {', '.join(shared)}",
                    task_ids=(first, second),
                    shared_resources=tuple(shared),
                    severity=assess_conflict_severity(shared),
                    resolution="Run sequentially or ensure resource safety"
                ))

        conflicts.extend(self._detect_ambiguous_declarations(tasks))
        return conflicts

    def _detect_ambiguous_declarations(self, tasks: Sequence[Task]) -> List[Conflict]:
        """Report task ids declared more than once with different dependencies."""
        declared: Dict[str, List[FrozenSet[str]]] = {}
        for task in tasks:
            declared.setdefault(task.id, []).append(frozenset(task.dependencies))

        conflicts = []
        for task_id, variants in declared.items():
            distinct = set(variants)
            if len(distinct) < 2:
                continue
            rendered = "; ".join(
                "[" + ", ".join(sorted(variant)) + "]" for variant in sorted(distinct, key=sorted)
            )
            conflicts.append(Conflict(
                kind=ConflictKind.DEPENDENCY_AMBIGUITY,
                description=(
                    f"Task {task_id} is declared {len(variants)} times with different "
                    f"dependencies: {rendered}"
                ),
                task_ids=(task_id,),
                severity="medium",
                resolution="Merge the declarations; the union of all dependencies is used"
            ))
        return conflicts

    def estimate_time_saving(self, graph: DependencyGraph, execution_order: List[List[str]]) -> int:
        """
        Estimate time saved by running each level in parallel.

        Sequential time is the sum of every task's duration; parallel time is
        the sum of the longest duration per level.
        """
        sequential_time = 0
        parallel_time = 0
        for task_ids in execution_order:
            durations = [graph.get_task(task_id).duration for task_id in task_ids]
            sequential_time += sum(durations)
            parallel_time += max(durations)
        return max(0, sequential_time - parallel_time)


def analyze_dependencies(tasks: Sequence[Task]) -> AnalysisResult:
    """Analyze tasks with a default DependencyAnalyzer."""
    return DependencyAnalyzer().analyze_dependencies(tasks)
