"""Tests for ancestor resolution of AI call history."""
import random

from branchgraph.core.ancestors import collect_ancestor_ids, resolve_history

from tests.graph_helpers import make_graph


def contents(history):
    return [m["content"] for m in history]


class TestResolveHistory:

    def test_chain_from_last_answer(self, chain):
        graph, messages = chain
        history = resolve_history(graph, messages, ["D"], 20)

        assert contents(history) == ["text of A", "text of B", "text of C", "text of D"]

    def test_join_visits_shared_ancestors_once(self, join):
        graph, messages = join

        assert sorted(collect_ancestor_ids(graph["edges"], ["E"])) == ["A", "B", "C", "D", "E"]
        history = resolve_history(graph, messages, ["E"], 20)
        assert contents(history) == ["text of A", "text of B", "text of C", "text of D", "text of E"]

    def test_limit_keeps_most_recent(self, chain):
        graph, messages = chain
        history = resolve_history(graph, messages, ["D"], 2)

        assert contents(history) == ["text of C", "text of D"]

    def test_empty_seeds(self, chain):
        graph, messages = chain
        assert resolve_history(graph, messages, [], 20) == []
        assert resolve_history(graph, messages, None, 20) == []

    def test_non_positive_limit(self, chain):
        graph, messages = chain
        assert resolve_history(graph, messages, ["D"], 0) == []

    def test_unknown_seed_has_no_ancestors(self, chain):
        graph, messages = chain
        history = resolve_history(graph, messages, ["nope", "B"], 20)

        assert contents(history) == ["text of A", "text of B"]

    def test_duplicate_and_nested_seeds(self, chain):
        graph, messages = chain
        expected = resolve_history(graph, messages, ["D"], 20)

        assert resolve_history(graph, messages, ["D", "B", "D", " D "], 20) == expected

    def test_sibling_branches_are_excluded(self):
        graph, messages = make_graph(
            [("A", "user"), ("B", "ai"), ("C", "user"), ("D", "ai"), ("X", "user"), ("Y", "ai")],
            [("A", "B"), ("B", "C"), ("C", "D"), ("B", "X"), ("X", "Y")],
        )
        history = resolve_history(graph, messages, ["Y"], 20)

        assert contents(history) == ["text of A", "text of B", "text of X", "text of Y"]

    def test_nodes_without_messages_are_skipped(self, chain):
        graph, messages = chain
        graph["nodes"]["C"]["message_id"] = None

        assert contents(resolve_history(graph, messages, ["D"], 20)) == ["text of A", "text of B", "text of D"]

    def test_random_graphs_stay_sorted_bounded_and_reachable(self):
        rng = random.Random(7)
        for _ in range(50):
            count = rng.randint(1, 12)
            specs = [(f"n{i}", rng.choice(["user", "ai"])) for i in range(count)]
            edges = {
                (f"n{j}", f"n{i}")
                for i in range(1, count)
                for j in rng.sample(range(i), k=min(i, rng.randint(0, 2)))
            }
            graph, messages = make_graph(specs, sorted(edges))
            seeds = [f"n{i}" for i in rng.sample(range(count), k=rng.randint(0, min(3, count)))]
            limit = rng.randint(1, 8)

            history = resolve_history(graph, messages, seeds, limit)
            reachable = {f"m-{n}" for n in collect_ancestor_ids(graph["edges"], seeds)}

            assert len(history) <= limit
            assert {m["id"] for m in history} <= reachable
            assert [m["created_at"] for m in history] == sorted(m["created_at"] for m in history)
