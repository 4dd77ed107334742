"""Tests for QA pairs, anchors and structural invariant checks."""
from branchgraph.core.graph import (
    anchor_for,
    build_pairs,
    check_invariants,
    in_degrees,
    incoming_map,
    pair_for_node,
)

from tests.graph_helpers import make_graph


class TestPairs:

    def test_pairs_group_question_with_answer(self, chain):
        graph, _ = chain
        pairs = build_pairs(graph)

        assert [(p.user_node["id"], p.ai_node["id"]) for p in pairs] == [("A", "B"), ("C", "D")]
        assert [p.anchor_id for p in pairs] == ["B", "D"]

    def test_unanswered_question_anchors_on_itself(self):
        graph, _ = make_graph([("A", "user"), ("B", "ai"), ("C", "user")], [("A", "B"), ("B", "C")])

        pair = pair_for_node(graph, "C")
        assert pair.ai_node is None
        assert pair.anchor_id == "C"

    def test_anchor_for_resolves_both_halves_of_a_pair(self, chain):
        graph, _ = chain
        assert anchor_for(graph, "A") == "B"
        assert anchor_for(graph, "B") == "B"
        assert anchor_for(graph, "missing") == "missing"

    def test_user_to_user_edge_is_not_an_answer(self):
        graph, _ = make_graph([("A", "user"), ("C", "user")], [("A", "C")])

        assert [p.anchor_id for p in build_pairs(graph)] == ["A", "C"]


class TestAdjacency:

    def test_join_has_two_incoming_edges(self, join):
        graph, _ = join
        assert sorted(incoming_map(graph["edges"])["E"]) == ["B", "D"]
        assert in_degrees(graph["edges"])["E"] == 2

    def test_adjacency_accepts_edge_lists(self, chain):
        graph, _ = chain
        assert incoming_map(list(graph["edges"].values())) == incoming_map(graph["edges"])


class TestInvariants:

    def test_sound_graph_has_no_problems(self, join):
        graph, _ = join
        assert check_invariants(graph) == []

    def test_answer_with_two_parents_is_reported(self):
        graph, _ = make_graph(
            [("A", "user"), ("C", "user"), ("B", "ai")],
            [("A", "B"), ("C", "B")],
        )
        problems = check_invariants(graph)
        assert any("'B' has 2 incoming edges" in p for p in problems)

    def test_answer_to_answer_is_reported(self):
        graph, _ = make_graph([("A", "user"), ("B", "ai"), ("D", "ai")], [("A", "B"), ("B", "D")])
        assert any("answers non-user node 'B'" in p for p in check_invariants(graph))

    def test_dangling_edge_is_reported(self):
        graph, _ = make_graph([("A", "user")], [("A", "ghost")])
        assert any("dangling target 'ghost'" in p for p in check_invariants(graph))

    def test_cycle_is_reported(self):
        graph, _ = make_graph([("A", "user"), ("C", "user")], [("A", "C"), ("C", "A")])
        assert any(p.startswith("Cycle detected") for p in check_invariants(graph))
