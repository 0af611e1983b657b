"""Property-based tests for DependencyGraph using Hypothesis.

These tests check invariants that must hold on any acyclic task graph:
- Ready tasks never wait on an unresolved blocker
- Total unblocked equals the size of the descendants walk
- Critical paths never revisit a task
- A back edge onto an existing chain is reported as a cycle
"""
from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from shipyard.core.dag import DependencyGraph, TaskNode, TaskStatus

# === Strategies ===

status_strategy = st.sampled_from(list(TaskStatus))


@st.composite
def acyclic_graphs(draw: st.DrawFn, max_size: int = 12) -> DependencyGraph:
    """Tasks T0..Tn where each task may only wait on lower-numbered tasks."""
    size = draw(st.integers(min_value=1, max_value=max_size))
    nodes: list[TaskNode] = []
    for index in range(size):
        earlier = [f"T{i}" for i in range(index)]
        blockers = draw(st.lists(st.sampled_from(earlier), max_size=3)) if earlier else []
        nodes.append(
            TaskNode(id=f"T{index}", status=draw(status_strategy), blocked_by=tuple(blockers))
        )
    return DependencyGraph.build(nodes)


# === Property Tests ===


@given(graph=acyclic_graphs())
@settings(max_examples=150)
def test_acyclic_graphs_have_no_cycles(graph: DependencyGraph) -> None:
    assert graph.detect_cycles() == []


@given(graph=acyclic_graphs())
@settings(max_examples=150)
def test_ready_tasks_have_resolved_blockers(graph: DependencyGraph) -> None:
    for ranked in graph.ready_tasks(include_started=True):
        assert ranked.task.status in (TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS)
        for blocker in ranked.task.blockers():
            assert graph.tasks[blocker].resolved


@given(graph=acyclic_graphs())
@settings(max_examples=150)
def test_total_unblocked_matches_descendants(graph: DependencyGraph) -> None:
    for task_id in graph.tasks:
        descendants = graph.descendants(task_id)
        assert graph.count_total_unblocked(task_id) == len(descendants)
        assert len(set(descendants)) == len(descendants)


@given(graph=acyclic_graphs())
@settings(max_examples=150)
def test_critical_path_is_a_simple_chain(graph: DependencyGraph) -> None:
    for task_id in graph.tasks:
        critical = graph.longest_path(task_id)
        assert critical.path[0] == task_id
        assert critical.length == len(critical.path) - 1
        assert len(set(critical.path)) == len(critical.path)
        assert critical.length <= len(graph) - 1
        for blocker, dependent in zip(critical.path, critical.path[1:]):
            assert blocker in graph.tasks[dependent].blockers()


@given(size=st.integers(min_value=2, max_value=10), data=st.data())
@settings(max_examples=100)
def test_back_edge_closes_a_cycle(size: int, data: st.DataObject) -> None:
    # Chain T0 <- T1 <- ... <- Tn-1, then make some earlier task wait on a later one.
    nodes = [
        TaskNode(id=f"T{i}", blocked_by=(f"T{i - 1}",) if i else ()) for i in range(size)
    ]
    low = data.draw(st.integers(min_value=0, max_value=size - 2))
    high = data.draw(st.integers(min_value=low + 1, max_value=size - 1))
    nodes[low] = TaskNode(id=f"T{low}", blocked_by=(*nodes[low].blocked_by, f"T{high}"))

    cycles = DependencyGraph.build(nodes).detect_cycles()

    assert cycles
    cycle = cycles[0]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {f"T{i}" for i in range(low, high + 1)}
