import pytest

from workflow_creator.capabilities import CapabilityIndex
from workflow_creator.config import MatchingConfig
from workflow_creator.matcher import WorkerMatcher, coverage_ratio
from workflow_creator.models import Task, Worker


def _worker(name: str, *capabilities: str, **kwargs) -> Worker:
    return Worker(name=name, capabilities=frozenset(capabilities), **kwargs)


def _task(*requires: str, **kwargs) -> Task:
    return Task(id="t", requires=frozenset(requires), **kwargs)


def test_coverage_ratio() -> None:
    assert coverage_ratio({"a", "b"}, {"a", "c"}) == 0.5
    assert coverage_ratio(set(), {"a"}) == 1.0
    assert coverage_ratio({"a"}, set()) == 0.0


def test_higher_coverage_wins_and_fallbacks_follow_ranking() -> None:
    snapshot = CapabilityIndex(
        [
            _worker("partial", "sql"),
            _worker("full", "sql", "etl"),
            _worker("also-partial", "etl"),
        ]
    ).snapshot()

    assignment = WorkerMatcher().match(_task("sql", "etl"), snapshot)

    assert assignment.primary == "full"
    assert assignment.fallbacks == ("also-partial", "partial")
    assert assignment.coverage == 1.0
    assert assignment.confidence == 1.0
    assert assignment.candidates == ("full", "also-partial", "partial")


def test_exact_tier_breaks_coverage_ties() -> None:
    snapshot = CapabilityIndex(
        [_worker("a-fast", "sql", tier="fast"), _worker("b-high", "sql", tier="high")]
    ).snapshot()

    assignment = WorkerMatcher().match(_task("sql", tier="high"), snapshot)

    assert assignment.primary == "b-high"
    assert assignment.fallbacks == ("a-fast",)


def test_name_breaks_remaining_ties() -> None:
    snapshot = CapabilityIndex([_worker("zeta", "sql"), _worker("alpha", "sql")]).snapshot()

    assignment = WorkerMatcher().match(_task("sql"), snapshot)

    assert assignment.primary == "alpha"


def test_confidence_includes_tier_bonus() -> None:
    matcher = WorkerMatcher()
    snapshot = CapabilityIndex([_worker("w", "sql", tier="fast")]).snapshot()

    adjacent = matcher.match(_task("sql", "etl", tier="standard"), snapshot)
    distant = matcher.match(_task("sql", tier="high"), snapshot)

    assert adjacent.coverage == 0.5
    assert adjacent.confidence == pytest.approx(0.4)
    assert distant.confidence == pytest.approx(0.5)
    assert matcher.tier_bonus("standard", "mystery") == 0.5


def test_threshold_is_inclusive_and_configurable() -> None:
    snapshot = CapabilityIndex([_worker("half", "a", "b")]).snapshot()
    task = _task("a", "b", "c", "d")

    assert WorkerMatcher().match(task, snapshot).primary == "half"
    strict = WorkerMatcher(MatchingConfig(acceptance_threshold=0.75)).match(task, snapshot)
    assert strict.status == "unassignable"
    assert strict.primary is None
    assert "75%" in strict.reason


def test_unavailable_workers_are_ignored() -> None:
    index = CapabilityIndex([_worker("only", "sql")])
    index.set_available("only", False)

    assignment = WorkerMatcher().match(_task("sql"), index.snapshot())

    assert assignment.is_assignable is False
    assert assignment.candidates == ()


def test_max_fallbacks_limits_the_list() -> None:
    snapshot = CapabilityIndex([_worker(name, "sql") for name in "abcde"]).snapshot()

    assignment = WorkerMatcher(MatchingConfig(max_fallbacks=1)).match(_task("sql"), snapshot)

    assert assignment.primary == "a"
    assert assignment.fallbacks == ("b",)


def test_match_all_is_deterministic() -> None:
    snapshot = CapabilityIndex(
        [_worker("w1", "sql"), _worker("w2", "sql", "ml"), _worker("w3", "ml")]
    ).snapshot()
    tasks = [
        Task(id="query", requires=frozenset({"sql"})),
        Task(id="train", requires=frozenset({"ml"})),
        Task(id="both", requires=frozenset({"sql", "ml"})),
    ]
    matcher = WorkerMatcher()

    first = matcher.match_all(tasks, snapshot)
    second = matcher.match_all(tasks, snapshot)

    assert first == second
    assert first["both"].primary == "w2"
    assert first["query"].primary == "w1"
