"""
Dependency Graph
================

In-memory task dependency graph used for execution planning.

Key Features:
- Idempotent task upserts with placeholder nodes for unseen dependencies
- Topological levels (memoized per graph generation)
- Cycle detection that terminates on any input, including self-loops
- Readiness checks for dynamic scheduling
- Critical path by summed estimated duration
- Exports as adjacency list, Graphviz DOT, Mermaid and ASCII

All traversals use explicit stacks, so deep chains do not hit the
interpreter recursion limit.
"""

from dataclasses import dataclass, field, replace
from typing import List, Dict, Set, Optional, Iterable, Tuple
import logging
import threading

logger = logging.getLogger(__name__)

DEFAULT_TASK_DURATION_MS = 5000


@dataclass
class Task:
    """
    A unit of work with dependencies and shared resources.

    Attributes:
        id: Unique task identifier
        description: Human-readable description
        completed: Whether the task is already done
        dependencies: IDs of tasks that must finish first
        resources: Shared resource identifiers (files, services, logical names)
        files: Files the task touches; treated as resources for conflicts
        estimated_duration: Estimated run time in milliseconds (None = default)
        priority: Derived by the graph (number of transitive dependents)
        tags: Free-form labels
    """
    id: str
    description: str = ""
    completed: bool = False
    dependencies: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    estimated_duration: Optional[int] = None
    priority: int = 0
    tags: List[str] = field(default_factory=list)

    @property
    def duration(self) -> int:
        """Estimated duration in milliseconds, falling back to the default."""
        if self.estimated_duration is None:
            return DEFAULT_TASK_DURATION_MS
        return self.estimated_duration

    @property
    def resource_set(self) -> Set[str]:
        return set(self.resources) | set(self.files)


@dataclass
class GraphNode:
    """
    Graph node wrapping a task.

    Attributes:
        task: The wrapped task
        level: Topological level (-1 until computed)
        dependencies: IDs this node depends on
        dependents: IDs that depend on this node (reverse edges)
        placeholder: True when created only because another task referenced it
    """
    task: Task
    level: int = -1
    dependencies: Set[str] = field(default_factory=set)
    dependents: Set[str] = field(default_factory=set)
    placeholder: bool = False

    @property
    def id(self) -> str:
        return self.task.id


@dataclass
class ExecutionLevel:
    """
    One level of the execution order.

    Attributes:
        level: Level number (0 = no dependencies)
        task_ids: Tasks at this level
        can_run_in_parallel: True if no two tasks share a resource
        estimated_duration: Longest member duration in milliseconds
    """
    level: int
    task_ids: List[str]
    can_run_in_parallel: bool
    estimated_duration: int


@dataclass
class GraphStatistics:
    """Summary numbers for a dependency graph."""
    total_tasks: int
    independent_tasks: int
    max_depth: int
    max_width: int
    has_cycles: bool
    critical_path_length: int
    critical_path_duration: int


def _merge_ids(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    """Union two id sequences, keeping first-seen order."""
    merged = list(existing)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


class DependencyGraph:
    """
    Task dependency graph.

    Mutations (add_task, add_complete_task) bump the graph generation;
    levels, execution order and derived priorities are recomputed from
    scratch on the next read. A single instance is guarded by an internal
    lock, but callers sharing it across threads should still keep to a
    single writer.
    """

    def __init__(self):
        self._nodes: Dict[str, GraphNode] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self._computed_generation = -1
        self._levels: Dict[int, List[str]] = {}
        self._execution_order: List[List[str]] = []

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_task(self, task_id: str, dependencies: Optional[Iterable[str]] = None) -> None:
        """
        Add a task by id, or union new dependencies into an existing node.

        Args:
            task_id: Task identifier
            dependencies: IDs the task depends on
        """
        deps = list(dependencies or [])
        with self._lock:
            node = self._nodes.get(task_id)
            if node is None:
                node = GraphNode(task=Task(id=task_id, dependencies=list(deps)))
                self._nodes[task_id] = node
            else:
                node.placeholder = False
                node.task.dependencies = _merge_ids(node.task.dependencies, deps)
            node.dependencies.update(deps)
            self._link(task_id, deps)
            self._invalidate()

    def add_complete_task(self, task: Task) -> None:
        """
        Add a task with full metadata (duration, resources, tags).

        If the id already exists (explicitly or as a placeholder), the new
        metadata replaces the old, dependencies are unioned and accumulated
        dependents are kept.

        Args:
            task: Task to add
        """
        with self._lock:
            node = self._nodes.get(task.id)
            if node is None:
                node = GraphNode(task=replace(task, dependencies=list(task.dependencies)))
                self._nodes[task.id] = node
            else:
                merged = _merge_ids(node.task.dependencies, task.dependencies)
                node.task = replace(task, dependencies=merged)
                node.placeholder = False
            node.dependencies.update(task.dependencies)
            self._link(task.id, task.dependencies)
            self._invalidate()

    def _link(self, task_id: str, dependencies: Iterable[str]) -> None:
        for dep_id in dependencies:
            dep_node = self._nodes.get(dep_id)
            if dep_node is None:
                logger.debug(f"Creating placeholder node for {dep_id} (referenced by {task_id})")
                dep_node = GraphNode(task=Task(id=dep_id), placeholder=True)
                self._nodes[dep_id] = dep_node
            dep_node.dependents.add(task_id)

    def _invalidate(self) -> None:
        self._generation += 1

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def task_ids(self) -> List[str]:
        return list(self._nodes)

    def get_node(self, task_id: str) -> Optional[GraphNode]:
        return self._nodes.get(task_id)

    def get_task(self, task_id: str) -> Optional[Task]:
        node = self._nodes.get(task_id)
        return node.task if node else None

    def is_placeholder(self, task_id: str) -> bool:
        node = self._nodes.get(task_id)
        return bool(node and node.placeholder)

    def get_placeholders(self) -> List[str]:
        """IDs referenced as dependencies but never added explicitly."""
        return [tid for tid, node in self._nodes.items() if node.placeholder]

    def get_independent_tasks(self) -> List[str]:
        """Get tasks with no dependencies (can start immediately)."""
        return [tid for tid, node in self._nodes.items() if not node.dependencies]

    def get_level(self, task_id: str) -> int:
        self._ensure_levels()
        node = self._nodes.get(task_id)
        return node.level if node else -1

    # ------------------------------------------------------------------
    # Levels and execution order
    # ------------------------------------------------------------------

    def _ensure_levels(self) -> None:
        with self._lock:
            if self._computed_generation == self._generation:
                return
            self._calculate_levels()
            self._calculate_priorities()
            self._execution_order = [
                list(self._levels[level]) for level in sorted(self._levels) if self._levels[level]
            ]
            self._computed_generation = self._generation

    def _calculate_levels(self) -> None:
        """
        Assign topological levels to every node.

        An edge to a node that is still being computed (a cycle) is ignored,
        so nodes inside a cycle get a level from their acyclic edges only.
        """
        levels: Dict[str, int] = {}

        for root_id in self._nodes:
            if root_id in levels:
                continue

            in_progress = {root_id}
            stack: List[Tuple[str, Iterable[str]]] = [
                (root_id, iter(sorted(self._nodes[root_id].dependencies)))
            ]
            while stack:
                node_id, pending = stack[-1]
                next_id = None
                for dep_id in pending:
                    if dep_id in levels or dep_id in in_progress:
                        continue
                    next_id = dep_id
                    break

                if next_id is not None:
                    in_progress.add(next_id)
                    stack.append((next_id, iter(sorted(self._nodes[next_id].dependencies))))
                    continue

                stack.pop()
                in_progress.discard(node_id)
                resolved = [levels[d] for d in self._nodes[node_id].dependencies if d in levels]
                levels[node_id] = max(resolved) + 1 if resolved else 0

        self._levels = {}
        for node_id, node in self._nodes.items():
            node.level = levels[node_id]
            self._levels.setdefault(node.level, []).append(node_id)

    def _calculate_priorities(self) -> None:
        """Priority = number of tasks transitively unblocked by this one."""
        for node_id, node in self._nodes.items():
            node.task.priority = len(self._reachable(node_id, forward=True))

    def get_execution_order(self) -> List[List[str]]:
        """
        Get execution order (task ids grouped by ascending level).

        Returns:
            List of levels, each a list of task ids
        """
        self._ensure_levels()
        return [list(level) for level in self._execution_order]

    def get_execution_levels(self) -> List[ExecutionLevel]:
        """Get execution order with per-level parallel safety and duration."""
        levels = []
        for index, task_ids in enumerate(self.get_execution_order()):
            levels.append(ExecutionLevel(
                level=self._nodes[task_ids[0]].level if task_ids else index,
                task_ids=task_ids,
                can_run_in_parallel=self.can_run_in_parallel(task_ids),
                estimated_duration=max(self._nodes[tid].task.duration for tid in task_ids)
            ))
        return levels

    def can_run_in_parallel(self, task_ids: List[str]) -> bool:
        """True if no two of the given tasks share a resource."""
        resources = [self._nodes[tid].task.resource_set for tid in task_ids if tid in self._nodes]
        for i in range(len(resources)):
            for j in range(i + 1, len(resources)):
                if resources[i] & resources[j]:
                    return False
        return True

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def can_start(self, task_id: str, completed: Set[str]) -> bool:
        """Check if a task can start (all dependencies completed)."""
        node = self._nodes.get(task_id)
        if node is None:
            return False
        return all(dep_id in completed for dep_id in node.dependencies)

    def get_next_tasks(self, completed: Set[str], in_progress: Set[str]) -> List[str]:
        """Get tasks that are not done, not running, and ready to start."""
        return [
            task_id for task_id in self._nodes
            if task_id not in completed
            and task_id not in in_progress
            and self.can_start(task_id, completed)
        ]

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    def detect_cycles(self) -> List[List[str]]:
        """
        Detect circular dependencies using DFS.

        When an edge leads back to a node on the current path, the closed
        cycle (path slice plus the repeated id) is recorded and the current
        node stops exploring. Fully visited nodes are never re-entered.

        Returns:
            List of cycles, each starting and ending with the same id
        """
        cycles: List[List[str]] = []
        visited: Set[str] = set()

        for root_id in self._nodes:
            if root_id in visited:
                continue

            visited.add(root_id)
            path = [root_id]
            on_path = {root_id}
            pending = [iter(sorted(self._nodes[root_id].dependencies))]

            while path:
                current = path[-1]
                next_id = None
                for dep_id in pending[-1]:
                    if dep_id in on_path:
                        start = path.index(dep_id)
                        cycle = path[start:] + [dep_id]
                        logger.debug(f"Cycle found: {' -> '.join(cycle)}")
                        cycles.append(cycle)
                        break
                    if dep_id not in visited:
                        next_id = dep_id
                        break

                if next_id is not None:
                    visited.add(next_id)
                    on_path.add(next_id)
                    path.append(next_id)
                    pending.append(iter(sorted(self._nodes[next_id].dependencies)))
                    continue

                on_path.discard(current)
                path.pop()
                pending.pop()

        if cycles:
            logger.warning(f"Detected {len(cycles)} circular dependencies")
        return cycles

    def _reachable(self, task_id: str, forward: bool) -> Set[str]:
        """Ids reachable from task_id along dependents (forward) or dependencies."""
        seen: Set[str] = set()
        stack = [task_id]
        while stack:
            node = self._nodes.get(stack.pop())
            if node is None:
                continue
            for neighbour in (node.dependents if forward else node.dependencies):
                if neighbour not in seen:
                    seen.add(neighbour)
                    stack.append(neighbour)
        seen.discard(task_id)
        return seen

    def get_ancestors(self, task_id: str) -> Set[str]:
        """All tasks this one transitively depends on."""
        return self._reachable(task_id, forward=False)

    def get_descendants(self, task_id: str) -> Set[str]:
        """All tasks that transitively depend on this one."""
        return self._reachable(task_id, forward=True)

    def are_connected(self, first: str, second: str) -> bool:
        """True if either task is reachable from the other via dependencies."""
        return second in self.get_ancestors(first) or first in self.get_ancestors(second)

    def get_critical_path(self) -> List[str]:
        """
        Identify the dependency chain with the largest summed duration.

        Paths start at independent tasks and follow dependents to a leaf.
        Ties go to the first path in root/child enumeration order, which is
        the order tasks were first added to the graph.

        Returns:
            List of task ids along the critical path
        """
        best: Dict[str, Tuple[int, Optional[str]]] = {}
        position = {task_id: index for index, task_id in enumerate(self._nodes)}

        def children(task_id: str) -> List[str]:
            return sorted(self._nodes[task_id].dependents, key=position.__getitem__)

        for root_id in self.get_independent_tasks():
            if root_id in best:
                continue

            on_path = {root_id}
            stack: List[Tuple[str, Iterable[str]]] = [
                (root_id, iter(children(root_id)))
            ]
            while stack:
                node_id, pending = stack[-1]
                next_id = None
                for child_id in pending:
                    if child_id in best or child_id in on_path:
                        continue
                    next_id = child_id
                    break

                if next_id is not None:
                    on_path.add(next_id)
                    stack.append((next_id, iter(children(next_id))))
                    continue

                stack.pop()
                on_path.discard(node_id)
                best_child, best_total = None, -1
                for child_id in children(node_id):
                    # Children still on the path are ancestors reached through a cycle
                    if child_id in on_path or child_id not in best:
                        continue
                    if best[child_id][0] > best_total:
                        best_child, best_total = child_id, best[child_id][0]
                best[node_id] = (self._nodes[node_id].task.duration + max(best_total, 0), best_child)

        start, start_total = None, -1
        for root_id in self.get_independent_tasks():
            if best[root_id][0] > start_total:
                start, start_total = root_id, best[root_id][0]

        path: List[str] = []
        current = start
        while current is not None and current not in path:
            path.append(current)
            current = best[current][1]

        if path:
            logger.debug(f"Critical path: {' -> '.join(path)} ({start_total}ms)")
        return path

    def get_statistics(self) -> GraphStatistics:
        """Get graph statistics."""
        self._ensure_levels()
        critical_path = self.get_critical_path()
        return GraphStatistics(
            total_tasks=len(self._nodes),
            independent_tasks=len(self.get_independent_tasks()),
            max_depth=len(self._execution_order),
            max_width=max((len(level) for level in self._execution_order), default=0),
            has_cycles=bool(self.detect_cycles()),
            critical_path_length=len(critical_path),
            critical_path_duration=sum(self._nodes[tid].task.duration for tid in critical_path)
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_adjacency_list(self) -> Dict[str, List[str]]:
        """Export graph as {task_id: [dependency ids]}."""
        return {task_id: sorted(node.dependencies) for task_id, node in self._nodes.items()}

    def to_dot(self) -> str:
        """Export graph in Graphviz DOT format."""
        lines = ["digraph TaskDependencies {", "  rankdir=TB;", "  node [shape=box];"]

        for task_id, node in self._nodes.items():
            label = (node.task.description or task_id).replace('"', "'")
            if not node.dependencies:
                color = "green"
            elif not node.dependents:
                color = "red"
            else:
                color = "blue"
            lines.append(f'  "{task_id}" [label="{label}", color={color}];')

        for task_id, node in self._nodes.items():
            for dep_id in sorted(node.dependencies):
                lines.append(f'  "{dep_id}" -> "{task_id}";')

        lines.append("}")
        return "\n".join(lines)

    def to_mermaid(self) -> str:
        """Export graph as a Mermaid flowchart."""
        if not self._nodes:
            return "graph TD\n  Empty[No dependency graph available]"

        self._ensure_levels()
        node_keys = {task_id: f"N{index}" for index, task_id in enumerate(self._nodes)}
        lines = ["graph TD"]

        for task_id, node in self._nodes.items():
            name = node.task.description or f"Task {task_id}"
            name = name.replace('"', "'").replace("[", "(").replace("]", ")")
            if len(name) > 40:
                name = name[:37] + "..."
            lines.append(f'  {node_keys[task_id]}["{task_id}: {name}<br/>Level {node.level}"]')

        for task_id, node in self._nodes.items():
            for dependent_id in sorted(node.dependents):
                lines.append(f"  {node_keys[task_id]} --> {node_keys[dependent_id]}")

        cycles = self.detect_cycles()
        if cycles:
            lines.append("")
            lines.append("  %% Circular dependencies detected")
            for cycle in cycles:
                lines.append(f"  %% Cycle: {' -> '.join(cycle)}")

        return "\n".join(lines)

    def to_ascii(self) -> str:
        """Export execution levels as plain text."""
        if not self._nodes:
            return "No dependency graph available"

        lines = ["=" * 70, "DEPENDENCY GRAPH", "=" * 70]

        levels = self.get_execution_levels()
        for level in levels:
            mode = "can run in parallel" if level.can_run_in_parallel else "resource overlap"
            lines.append(f"\nLEVEL {level.level} ({mode}, ~{level.estimated_duration}ms):")
            lines.append("-" * 70)
            for task_id in level.task_ids:
                node = self._nodes[task_id]
                lines.append(f"  [{task_id}] {node.task.description or '(no description)'}")
                if node.dependencies:
                    lines.append(f"      Depends on: {', '.join(sorted(node.dependencies))}")
                else:
                    lines.append("      Depends on: None")
                if node.placeholder:
                    lines.append("      (placeholder: referenced but not defined)")

        cycles = self.detect_cycles()
        if cycles:
            lines.append("\n" + "!" * 70)
            lines.append("CIRCULAR DEPENDENCIES DETECTED:")
            lines.append("!" * 70)
            for cycle in cycles:
                lines.append(f"  {' -> '.join(cycle)}")

        lines.append("\n" + "=" * 70)
        lines.append(f"Total: {len(self._nodes)} tasks in {len(levels)} levels")
        lines.append("=" * 70)

        return "\n".join(lines)
