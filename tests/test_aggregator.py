import pytest

from workflow_creator.aggregator import AggregationConflictError, aggregate
from workflow_creator.context import ContextFragment


def _fragment(task_id: str, **data) -> ContextFragment:
    return ContextFragment(task_id=task_id, data=data)


def test_merge_keys_by_task_id() -> None:
    result = aggregate([_fragment("a", x=1), _fragment("b", x=2)])

    assert result.strategy == "merge"
    assert result.data == {"a": {"x": 1}, "b": {"x": 2}}
    assert result.contributors == ("a", "b")


def test_consensus_picks_plurality() -> None:
    result = aggregate(
        [_fragment("a", label="cat"), _fragment("b", label="dog"), _fragment("c", label="cat")],
        "consensus",
    )

    assert result.data == {"label": "cat"}
    assert result.selected == ("a", "c")


def test_consensus_tie_broken_by_confidence() -> None:
    result = aggregate(
        [_fragment("a", label="cat"), _fragment("b", label="dog")],
        "consensus",
        {"a": 0.6, "b": 0.9},
    )

    assert result.data == {"label": "dog"}


def test_consensus_unresolved_tie_raises() -> None:
    with pytest.raises(AggregationConflictError) as excinfo:
        aggregate(
            [_fragment("a", label="cat"), _fragment("b", label="dog")],
            "consensus",
            {"a": 0.7, "b": 0.7},
        )

    assert excinfo.value.tied == [["a"], ["b"]]


def test_priority_takes_highest_confidence_and_earliest_on_ties() -> None:
    fragments = [_fragment("a", v=1), _fragment("b", v=2), _fragment("c", v=3)]

    assert aggregate(fragments, "priority", {"a": 0.5, "b": 0.9, "c": 0.9}).data == {"v": 2}
    assert aggregate(fragments, "priority").data == {"v": 1}


def test_empty_input_and_unknown_strategy() -> None:
    assert aggregate([], "consensus").data == {}
    with pytest.raises(ValueError):
        aggregate([_fragment("a")], "vote")
