"""Tests for the table file: cascades, atomic saves and backups."""
import json

import pytest

from branchgraph.core.exceptions import ConversationNotFoundError, ValidationError
from branchgraph.core.persistence import TablePersistence
from branchgraph.core.tables import ConversationTables

from tests.graph_helpers import CONVERSATION_ID, join_graph


@pytest.fixture
def tables():
    graph, messages = join_graph()
    result = ConversationTables()
    result.insert_conversation({
        "id": CONVERSATION_ID,
        "title": "Caching",
        "created_at": "2024-01-01T00:00:00.000000Z",
        "system_instruction": None,
        "viewport_x": None,
        "viewport_y": None,
        "viewport_zoom": None,
    })
    for message in messages.values():
        result.insert_message(message)
    for node in graph["nodes"].values():
        result.insert_node(node)
    for edge in graph["edges"].values():
        result.insert_edge(edge)
    return result


class TestConversationTables:

    def test_graph_snapshot(self, tables):
        graph = tables.graph(CONVERSATION_ID)

        assert set(graph["nodes"]) == {"A", "B", "C", "D", "E"}
        assert len(graph["edges"]) == 5
        assert tables.graph("other") == {"nodes": {}, "edges": {}}

    def test_unknown_conversation(self, tables):
        with pytest.raises(ConversationNotFoundError):
            tables.conversation("other")
        with pytest.raises(ConversationNotFoundError):
            tables.insert_node({**tables.nodes["A"], "id": "Z", "conversation_id": "other"})

    def test_invalid_node_type(self, tables):
        with pytest.raises(ValidationError):
            tables.insert_node({**tables.nodes["A"], "id": "Z", "type": "system"})

    def test_deleting_nodes_removes_touching_edges(self, tables):
        deleted, edges_removed = tables.delete_nodes(CONVERSATION_ID, ["D", "missing"])

        assert deleted == ["D"]
        assert edges_removed == 2
        assert all("D" not in (e["source"], e["target"]) for e in tables.edges.values())

    def test_deleting_message_clears_node_reference(self, tables):
        tables.delete_messages(CONVERSATION_ID, ["m-C"])

        assert "m-C" not in tables.messages
        assert tables.nodes["C"]["message_id"] is None

    def test_deleting_conversation_cascades(self, tables):
        assert tables.delete_conversation(CONVERSATION_ID)
        assert tables.counts() == {"conversations": 0, "messages": 0, "nodes": 0, "edges": 0}
        assert not tables.delete_conversation(CONVERSATION_ID)


class TestTablePersistence:

    def test_save_and_load(self, tmp_path, tables):
        tables.messages["m-E"]["context_ranges"] = [{"sourceNodeId": "B", "startPos": 0, "endPos": 4}]
        persistence = TablePersistence(tmp_path / "graph.json")

        assert persistence.save(tables)
        loaded = persistence.load()

        assert loaded.counts() == tables.counts()
        assert loaded.messages["m-E"]["context_ranges"] == [{"sourceNodeId": "B", "startPos": 0, "endPos": 4}]
        assert loaded.nodes["E"] == tables.nodes["E"]

    def test_context_ranges_are_stored_as_json_text(self, tmp_path, tables):
        tables.messages["m-E"]["context_ranges"] = [{"sourceNodeId": "B", "startPos": 0, "endPos": 4}]
        path = tmp_path / "graph.json"
        TablePersistence(path).save(tables)

        raw = json.loads(path.read_text())

        assert isinstance(raw["messages"]["m-E"]["context_ranges"], str)
        assert raw["messages"]["m-A"]["context_ranges"] is None
        # In-memory rows are not rewritten by saving
        assert isinstance(tables.messages["m-E"]["context_ranges"], list)

    def test_missing_file_gives_empty_tables(self, tmp_path):
        assert TablePersistence(tmp_path / "none.json").load().counts()["nodes"] == 0

    def test_corrupt_file_gives_empty_tables(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text("{not json")

        assert TablePersistence(path).load().counts()["conversations"] == 0

    def test_no_temp_file_left_behind(self, tmp_path, tables):
        TablePersistence(tmp_path / "graph.json").save(tables)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["graph.json"]

    def test_backup_rotation(self, tmp_path, tables):
        persistence = TablePersistence(tmp_path / "graph.json")
        assert not persistence.maybe_backup()

        persistence.save(tables)
        assert persistence.maybe_backup()
        assert persistence.backup_path(1).exists()

        # Marker is fresh, so no second backup within the interval
        assert not persistence.maybe_backup()
