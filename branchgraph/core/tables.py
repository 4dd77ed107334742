"""In-memory conversation tables with relational cascade semantics."""

import logging

from .exceptions import ConversationNotFoundError
from .graph import empty_graph
from .types import Conversation, Edge, Graph, Message, Node
from .utils import validate_node_type

logger = logging.getLogger(__name__)

TABLES = ("conversations", "messages", "nodes", "edges")


class ConversationTables:
    """
    Rows of the four tables, keyed by id.

    Deleting a node removes every edge touching it; deleting a conversation
    removes all of its rows.
    """

    def __init__(self, data: dict | None = None):
        data = data or {}
        self.conversations: dict[str, Conversation] = dict(data.get("conversations", {}))
        self.messages: dict[str, Message] = dict(data.get("messages", {}))
        self.nodes: dict[str, Node] = dict(data.get("nodes", {}))
        self.edges: dict[str, Edge] = dict(data.get("edges", {}))

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in TABLES}

    def counts(self) -> dict[str, int]:
        return {name: len(getattr(self, name)) for name in TABLES}

    # ========================================================================
    # Reads
    # ========================================================================

    def conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def graph(self, conversation_id: str) -> Graph:
        """Snapshot of one conversation's nodes and edges."""
        graph = empty_graph()
        graph["nodes"] = {k: n for k, n in self.nodes.items() if n["conversation_id"] == conversation_id}
        graph["edges"] = {k: e for k, e in self.edges.items() if e["conversation_id"] == conversation_id}
        return graph

    def conversation_messages(self, conversation_id: str) -> dict[str, Message]:
        return {k: m for k, m in self.messages.items() if m["conversation_id"] == conversation_id}

    # ========================================================================
    # Writes
    # ========================================================================

    def insert_conversation(self, conversation: Conversation):
        self.conversations[conversation["id"]] = conversation

    def insert_message(self, message: Message):
        self.conversation(message["conversation_id"])
        self.messages[message["id"]] = message

    def insert_node(self, node: Node):
        self.conversation(node["conversation_id"])
        validate_node_type(node["type"])
        self.nodes[node["id"]] = node

    def insert_edge(self, edge: Edge):
        self.conversation(edge["conversation_id"])
        self.edges[edge["id"]] = edge

    def delete_messages(self, conversation_id: str, message_ids) -> int:
        deleted = 0
        for message_id in message_ids:
            message = self.messages.get(message_id)
            if message and message["conversation_id"] == conversation_id:
                del self.messages[message_id]
                deleted += 1
        # nodes.message_id is ON DELETE SET NULL
        for node in self.nodes.values():
            if node["message_id"] is not None and node["message_id"] not in self.messages:
                node["message_id"] = None
        return deleted

    def delete_nodes(self, conversation_id: str, node_ids) -> tuple[list[str], int]:
        """Delete nodes and the edges touching them. Returns (deleted ids, edges removed)."""
        doomed = {
            node_id for node_id in node_ids
            if node_id in self.nodes and self.nodes[node_id]["conversation_id"] == conversation_id
        }
        edges_to_delete = [
            key for key, edge in self.edges.items()
            if edge["source"] in doomed or edge["target"] in doomed
        ]
        for key in edges_to_delete:
            del self.edges[key]
        for node_id in doomed:
            del self.nodes[node_id]
        return [node_id for node_id in node_ids if node_id in doomed], len(edges_to_delete)

    def delete_conversation(self, conversation_id: str) -> bool:
        if self.conversations.pop(conversation_id, None) is None:
            return False
        for table in (self.messages, self.nodes, self.edges):
            for key in [k for k, row in table.items() if row["conversation_id"] == conversation_id]:
                del table[key]
        return True
