import pytest

from santadraw.services.constraints import (
    build_candidate_graph,
    find_duplicates,
    givers_without_candidates,
    is_valid_assignment,
    normalize_exclusions,
)


def test_graph_without_exclusions_excludes_only_self():
    graph = build_candidate_graph(["A", "B", "C"])
    assert graph == {"A": {"B", "C"}, "B": {"A", "C"}, "C": {"A", "B"}}


def test_exclusion_is_symmetric():
    graph = build_candidate_graph(["A", "B", "C", "D"], [("A", "B")])
    assert "B" not in graph["A"]
    assert "A" not in graph["B"]
    assert graph["C"] == {"A", "B", "D"}


def test_graph_keeps_input_order():
    graph = build_candidate_graph([3, 1, 2])
    assert list(graph) == [3, 1, 2]


def test_self_and_outsider_pairs_are_ignored():
    pairs = normalize_exclusions([1, 2, 3], [(1, 1), (1, 9), (2, 3), (3, 2)])
    assert pairs == {frozenset((2, 3))}


def test_duplicates_are_rejected():
    assert find_duplicates([1, 2, 1, 3, 2, 1]) == [1, 2]
    with pytest.raises(ValueError):
        build_candidate_graph([1, 2, 1])


def test_givers_without_candidates():
    graph = build_candidate_graph(["A", "B", "C"], [("A", "B"), ("A", "C")])
    assert givers_without_candidates(graph) == ["A"]


def test_is_valid_assignment():
    graph = build_candidate_graph([1, 2, 3])
    assert is_valid_assignment({1: 2, 2: 3, 3: 1}, graph)
    assert not is_valid_assignment({1: 1, 2: 3, 3: 2}, graph)
    assert not is_valid_assignment({1: 2, 2: 1, 3: 1}, graph)
    assert not is_valid_assignment({1: 2, 2: 1}, graph)
