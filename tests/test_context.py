import pytest

from workflow_creator.context import ContextAccessError, ContextWriteError, ExecutionContext


def test_view_resolves_latest_upstream_then_inputs() -> None:
    context = ExecutionContext({"region": "eu", "limit": 10})
    context.record("extract", {"rows": 3, "limit": 5})
    context.record("clean", {"rows": 2})

    view = context.view("load", ["extract", "clean"])

    assert view["rows"] == 2
    assert view["limit"] == 5
    assert view["region"] == "eu"
    assert view.upstream_ids == ("extract", "clean")
    assert set(view) == {"rows", "limit", "region"}
    with pytest.raises(KeyError):
        view["missing"]


def test_view_hides_fragments_outside_visible_set() -> None:
    context = ExecutionContext()
    context.record("left", {"value": 1})
    context.record("right", {"value": 2})

    view = context.view("after_left", ["left"])

    assert view["value"] == 1
    assert view.fragment("left").data["value"] == 1
    with pytest.raises(ContextAccessError):
        view.fragment("right")


def test_fragments_are_immutable_copies() -> None:
    payload = {"items": [1, 2]}
    context = ExecutionContext()
    fragment = context.record("a", payload, schema="list/v1")
    payload["items"].append(3)

    assert fragment.data["items"] == [1, 2]
    assert fragment.schema == "list/v1"
    with pytest.raises(TypeError):
        fragment.data["items"] = []  # type: ignore[index]


def test_fragment_written_once() -> None:
    context = ExecutionContext()
    context.record("a", {"x": 1})

    with pytest.raises(ContextWriteError):
        context.record("a", {"x": 2})


def test_to_dict_keeps_schema_and_data() -> None:
    context = ExecutionContext({"seed": 1})
    context.record("a", {"x": 1}, schema="point")

    assert context.to_dict() == {"a": {"schema": "point", "data": {"x": 1}}}
    assert context.view("b", ["a"]).to_dict()["inputs"] == {"seed": 1}
