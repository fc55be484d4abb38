"""
Test DependencyGraph implementation
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from paraflow.parallel.dependency_graph import DependencyGraph, Task, DEFAULT_TASK_DURATION_MS


def build_diamond(durations=None):
    """1 -> {2, 3} -> 4"""
    durations = durations or {}
    graph = DependencyGraph()
    graph.add_complete_task(Task(id="1", estimated_duration=durations.get("1")))
    graph.add_complete_task(Task(id="2", dependencies=["1"], estimated_duration=durations.get("2")))
    graph.add_complete_task(Task(id="3", dependencies=["1"], estimated_duration=durations.get("3")))
    graph.add_complete_task(Task(id="4", dependencies=["2", "3"], estimated_duration=durations.get("4")))
    return graph


def test_linear_chain_levels():
    """Test linear dependency chain: 1 <- 2 <- 3"""
    print("\n=== Test: Linear Chain ===")

    graph = DependencyGraph()
    graph.add_task("1")
    graph.add_task("2", ["1"])
    graph.add_task("3", ["2"])

    order = graph.get_execution_order()
    print(f"Execution order: {order}")

    assert order == [["1"], ["2"], ["3"]]
    assert graph.get_level("3") == 2
    assert graph.get_independent_tasks() == ["1"]

    print("[PASS]")


def test_diamond_levels_and_priority():
    """Test diamond: 2 and 3 share level 1, 4 lands after both"""
    print("\n=== Test: Diamond ===")

    graph = build_diamond()
    order = graph.get_execution_order()

    assert order == [["1"], ["2", "3"], ["4"]]
    assert graph.get_level("4") > max(graph.get_level("2"), graph.get_level("3"))
    # Priority counts transitive dependents
    assert graph.get_task("1").priority == 3
    assert graph.get_task("2").priority == 1
    assert graph.get_task("4").priority == 0

    print("[PASS]")


def test_placeholder_then_definition():
    """A dependency referenced before it is defined becomes a placeholder"""
    print("\n=== Test: Placeholder Upsert ===")

    graph = DependencyGraph()
    graph.add_task("b", ["a"])

    assert "a" in graph
    assert graph.is_placeholder("a")
    assert graph.get_placeholders() == ["a"]

    graph.add_complete_task(Task(id="a", description="Set up schema", estimated_duration=100))

    assert not graph.is_placeholder("a")
    assert graph.get_node("a").dependents == {"b"}
    assert graph.get_task("a").description == "Set up schema"
    assert graph.get_task("a").duration == 100
    assert len(graph) == 2

    print("[PASS]")


def test_add_task_unions_dependencies():
    """Re-adding a task merges its dependency set"""
    graph = DependencyGraph()
    graph.add_task("c", ["a"])
    graph.add_task("c", ["b"])

    assert graph.get_node("c").dependencies == {"a", "b"}
    assert graph.get_task("c").dependencies == ["a", "b"]
    assert graph.get_node("a").dependents == {"c"}
    assert graph.get_node("b").dependents == {"c"}

    print("[PASS]")


def test_levels_recomputed_after_mutation():
    """Mutations invalidate memoized levels"""
    graph = DependencyGraph()
    graph.add_task("1")
    graph.add_task("2")
    generation = graph.generation

    assert graph.get_execution_order() == [["1", "2"]]

    graph.add_task("2", ["1"])

    assert graph.generation > generation
    assert graph.get_execution_order() == [["1"], ["2"]]

    print("[PASS]")


def test_cycle_detection():
    """Test cycle 1 -> 3 -> 2 -> 1 (each depends on the next)"""
    print("\n=== Test: Cycle Detection ===")

    graph = DependencyGraph()
    graph.add_task("1", ["3"])
    graph.add_task("2", ["1"])
    graph.add_task("3", ["2"])

    cycles = graph.detect_cycles()
    print(f"Cycles: {cycles}")

    assert len(cycles) >= 1
    cycle = cycles[0]
    assert len(cycle) >= 3
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"1", "2", "3"}

    # Levels still terminate and cover every task
    order = graph.get_execution_order()
    assert sorted(task_id for level in order for task_id in level) == ["1", "2", "3"]

    print("[PASS]")


def test_self_loop():
    """A task depending on itself is a cycle and does not hang leveling"""
    graph = DependencyGraph()
    graph.add_task("a", ["a"])

    assert graph.detect_cycles() == [["a", "a"]]
    assert graph.get_level("a") == 0
    assert graph.get_critical_path() == []

    print("[PASS]")


def test_no_cycles_in_dag():
    graph = build_diamond()
    assert graph.detect_cycles() == []


def test_critical_path_by_duration():
    """Critical path follows the largest summed duration"""
    print("\n=== Test: Critical Path ===")

    graph = build_diamond({"1": 100, "2": 300, "3": 200, "4": 100})
    path = graph.get_critical_path()
    print(f"Critical path: {path}")

    assert path == ["1", "2", "4"]

    graph = DependencyGraph()
    graph.add_complete_task(Task(id="short", estimated_duration=500))
    graph.add_complete_task(Task(id="a", estimated_duration=1000))
    graph.add_complete_task(Task(id="b", dependencies=["a"], estimated_duration=2000))

    assert graph.get_critical_path() == ["a", "b"]

    print("[PASS]")


def test_critical_path_reaches_zero_duration_leaf():
    graph = DependencyGraph()
    graph.add_complete_task(Task(id="a", estimated_duration=0))
    graph.add_complete_task(Task(id="b", dependencies=["a"], estimated_duration=0))

    assert graph.get_critical_path() == ["a", "b"]


def test_critical_path_ties_follow_insertion_order():
    """Equal-duration branches resolve to the dependent added first"""
    graph = DependencyGraph()
    graph.add_task("root")
    graph.add_task("zeta", ["root"])
    graph.add_task("alpha", ["root"])

    assert graph.get_critical_path() == ["root", "zeta"]


def test_default_duration():
    task = Task(id="x")
    assert task.duration == DEFAULT_TASK_DURATION_MS
    assert Task(id="y", estimated_duration=0).duration == 0


def test_can_start_and_next_tasks():
    """Readiness follows completed dependencies"""
    graph = build_diamond()

    assert graph.can_start("1", set())
    assert not graph.can_start("2", set())
    assert not graph.can_start("missing", set())

    assert graph.get_next_tasks(set(), set()) == ["1"]
    assert graph.get_next_tasks({"1"}, set()) == ["2", "3"]
    assert graph.get_next_tasks({"1"}, {"2"}) == ["3"]
    assert graph.get_next_tasks({"1", "2"}, {"3"}) == []
    assert graph.get_next_tasks({"1", "2", "3"}, set()) == ["4"]

    print("[PASS]")


def test_ancestors_descendants_connected():
    graph = build_diamond()

    assert graph.get_ancestors("4") == {"1", "2", "3"}
    assert graph.get_descendants("2") == {"4"}
    assert graph.are_connected("1", "4")
    assert not graph.are_connected("2", "3")


def test_resources_block_parallel_level():
    graph = DependencyGraph()
    graph.add_complete_task(Task(id="a", resources=["database"], estimated_duration=100))
    graph.add_complete_task(Task(id="b", files=["database"], estimated_duration=300))
    graph.add_complete_task(Task(id="c", resources=["cache"]))

    assert not graph.can_run_in_parallel(["a", "b"])
    assert graph.can_run_in_parallel(["a", "c"])

    levels = graph.get_execution_levels()
    assert len(levels) == 1
    assert levels[0].level == 0
    assert not levels[0].can_run_in_parallel
    assert levels[0].estimated_duration == DEFAULT_TASK_DURATION_MS


def test_statistics():
    stats = build_diamond().get_statistics()

    assert stats.total_tasks == 4
    assert stats.independent_tasks == 1
    assert stats.max_depth == 3
    assert stats.max_width == 2
    assert not stats.has_cycles
    assert stats.critical_path_length == 3
    assert stats.critical_path_duration == 3 * DEFAULT_TASK_DURATION_MS


def test_deep_chain_does_not_recurse():
    """Long chains are handled with explicit stacks"""
    print("\n=== Test: Deep Chain ===")

    depth = 2000
    graph = DependencyGraph()
    graph.add_task("t0")
    for i in range(1, depth):
        graph.add_task(f"t{i}", [f"t{i - 1}"])

    assert graph.get_level(f"t{depth - 1}") == depth - 1
    assert graph.detect_cycles() == []
    assert len(graph.get_critical_path()) == depth

    print("[PASS]")


def test_exports():
    """Test adjacency list, DOT, Mermaid and ASCII exports"""
    print("\n=== Test: Exports ===")

    graph = build_diamond()

    assert graph.to_adjacency_list() == {"1": [], "2": ["1"], "3": ["1"], "4": ["2", "3"]}

    dot = graph.to_dot()
    assert dot.startswith("digraph TaskDependencies {")
    assert '"1" -> "2";' in dot
    assert '"3" -> "4";' in dot

    mermaid = graph.to_mermaid()
    assert mermaid.startswith("graph TD")
    assert "N0 --> N1" in mermaid
    assert "Level 2" in mermaid

    ascii_art = graph.to_ascii()
    assert "LEVEL 0" in ascii_art
    assert "Depends on: 2, 3" in ascii_art
    assert "Total: 4 tasks in 3 levels" in ascii_art

    empty = DependencyGraph()
    assert "Empty" in empty.to_mermaid()
    assert empty.to_ascii() == "No dependency graph available"

    print("[PASS]")


def test_exports_report_cycles():
    graph = DependencyGraph()
    graph.add_task("a", ["b"])
    graph.add_task("b", ["a"])

    assert "%% Cycle:" in graph.to_mermaid()
    assert "CIRCULAR DEPENDENCIES DETECTED" in graph.to_ascii()
