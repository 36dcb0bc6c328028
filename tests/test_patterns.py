from workflow_creator.graph import build_task_graph
from workflow_creator.models import Condition, Task
from workflow_creator.patterns import classify


def _task(task_id: str, *after: str, **kwargs) -> Task:
    return Task(id=task_id, after=after, **kwargs)


def test_linear_chain_is_sequential() -> None:
    classification = classify(build_task_graph([_task("A"), _task("B", "A"), _task("C", "B")]))

    assert classification.pattern == "sequential"
    assert [segment.task_ids for segment in classification.segments] == [("A", "B", "C")]
    assert classification.segments[0].pattern == "sequential"
    assert classification.warnings == ()


def test_diamond_is_parallel_with_barriers() -> None:
    classification = classify(
        build_task_graph([_task("A"), _task("B", "A"), _task("C", "A"), _task("D", "B", "C")])
    )

    assert classification.pattern == "parallel"
    assert [(segment.pattern, segment.task_ids) for segment in classification.segments] == [
        ("sequential", ("A",)),
        ("parallel", ("B", "C")),
        ("sequential", ("D",)),
    ]
    assert classification.dependency_density == 1.0


def test_independent_roots_are_parallel() -> None:
    classification = classify(build_task_graph([_task("A"), _task("B"), _task("C", "A")]))

    assert classification.pattern == "parallel"
    assert classification.dependency_density == 0.5


def test_branch_alternatives_are_conditional_not_parallel() -> None:
    classification = classify(
        build_task_graph(
            [
                _task("A"),
                _task("B", "A", condition=Condition("score", ">", 0.8)),
                _task("C", "A", default_branch=True),
            ]
        )
    )

    assert classification.pattern == "conditional"
    assert classification.has_parallel is False
    assert classification.branch_factor == 2
    group = classification.branch_groups[0]
    assert group.decision_point == ("A",)
    assert group.heads == ("B", "C")
    assert group.default == "C"
    assert classification.group_for("C") == group
    assert classification.segment_of("B").pattern == "conditional"


def test_parallel_work_feeding_a_branch_is_hybrid() -> None:
    classification = classify(
        build_task_graph(
            [
                _task("A"),
                _task("B", "A"),
                _task("C", "A"),
                _task("D", "B", "C", condition=Condition("ok")),
                _task("E", "B", "C", default_branch=True),
            ]
        )
    )

    assert classification.pattern == "hybrid"
    assert classification.has_conditional is True
    assert classification.has_parallel is True
    assert [(segment.pattern, segment.task_ids) for segment in classification.segments] == [
        ("sequential", ("A",)),
        ("hybrid", ("B", "C", "D", "E")),
    ]


def test_single_task_warns_and_defaults_to_sequential() -> None:
    classification = classify(build_task_graph([_task("only")]))

    assert classification.pattern == "sequential"
    assert any("only" in warning for warning in classification.warnings)


def test_empty_graph_warns() -> None:
    classification = classify(build_task_graph([]))

    assert classification.pattern == "sequential"
    assert classification.segments == ()
    assert classification.warnings


def test_multiple_defaults_warn_and_first_wins() -> None:
    classification = classify(
        build_task_graph(
            [
                _task("A"),
                _task("B", "A", default_branch=True),
                _task("C", "A", default_branch=True),
            ]
        )
    )

    assert classification.branch_groups[0].default == "B"
    assert any("Multiple default branches" in warning for warning in classification.warnings)


def test_every_task_lands_in_exactly_one_phase() -> None:
    tasks = [
        _task("fetch"),
        _task("parse", "fetch"),
        _task("lint", "fetch"),
        _task("report", "parse", "lint"),
        _task("publish", "report", condition=Condition("approved")),
        _task("archive", "report"),
    ]
    classification = classify(build_task_graph(tasks))

    placed = [task_id for segment in classification.segments for task_id in segment.task_ids]
    assert sorted(placed) == sorted(task.id for task in tasks)
    assert len(placed) == len(set(placed))
