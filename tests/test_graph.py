import pytest

from workflow_creator.graph import (
    CyclicDependencyError,
    DanglingReferenceError,
    DuplicateTaskError,
    build_task_graph,
)
from workflow_creator.models import Task


def _task(task_id: str, *after: str) -> Task:
    return Task(id=task_id, after=after)


def test_chain_orders_by_dependency() -> None:
    graph = build_task_graph([_task("C", "B"), _task("A"), _task("B", "A")])

    assert graph.order == ("A", "B", "C")
    assert graph.layers == (("A",), ("B",), ("C",))
    assert graph.longest_path_length == 3
    assert graph.edge_count == 2
    assert graph.roots == ("A",)


def test_same_depth_keeps_input_order() -> None:
    graph = build_task_graph(
        [_task("root"), _task("z", "root"), _task("a", "root"), _task("join", "a", "z")]
    )

    assert graph.order == ("root", "z", "a", "join")
    assert graph.depths["join"] == 2
    assert graph.ancestors["join"] == frozenset({"root", "a", "z"})
    assert graph.descendants["root"] == frozenset({"a", "z", "join"})
    assert graph.independent("a", "z") is True
    assert graph.independent("root", "join") is False


def test_depth_uses_longest_path() -> None:
    graph = build_task_graph([_task("A"), _task("B", "A"), _task("C", "A", "B")])

    assert graph.depths == {"A": 0, "B": 1, "C": 2}
    assert graph.predecessors["C"] == ("A", "B")


def test_empty_graph() -> None:
    graph = build_task_graph([])

    assert len(graph) == 0
    assert graph.order == ()
    assert graph.longest_path_length == 0


def test_duplicate_ids_rejected() -> None:
    with pytest.raises(DuplicateTaskError) as excinfo:
        build_task_graph([_task("A"), _task("A")])

    assert excinfo.value.task_id == "A"


def test_dangling_reference_names_task_and_missing_id() -> None:
    with pytest.raises(DanglingReferenceError) as excinfo:
        build_task_graph([_task("A"), _task("B", "ghost")])

    assert excinfo.value.task_id == "B"
    assert excinfo.value.missing == "ghost"


def test_cycle_is_reported_with_its_members() -> None:
    with pytest.raises(CyclicDependencyError) as excinfo:
        build_task_graph([_task("A", "C"), _task("B", "A"), _task("C", "B"), _task("D")])

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"A", "B", "C"}
    assert "D" not in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CyclicDependencyError) as excinfo:
        build_task_graph([_task("A", "A")])

    assert excinfo.value.cycle == ["A", "A"]


def test_duplicate_after_entries_collapse() -> None:
    graph = build_task_graph([_task("A"), _task("B", "A", "A")])

    assert graph.predecessors["B"] == ("A",)
    assert graph.successors["A"] == ("B",)
