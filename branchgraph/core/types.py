"""Type definitions for the conversation graph.

Rows use the persisted column names so they can travel unchanged between the
engine, the table file and the wire.
"""

from typing import Literal, NotRequired, TypedDict

NodeType = Literal["user", "ai"]


class ContextRange(TypedDict):
    """Span of a new node's text that was quoted from another node."""
    sourceNodeId: str
    startPos: int
    endPos: int
    sourceStartPos: NotRequired[int]
    sourceEndPos: NotRequired[int]


class Conversation(TypedDict):
    """Conversation row."""
    id: str
    title: str
    created_at: str
    system_instruction: str | None
    viewport_x: float | None
    viewport_y: float | None
    viewport_zoom: float | None


class Message(TypedDict):
    """Stored message behind a node."""
    id: str
    conversation_id: str
    author: NodeType
    content: str
    created_at: str
    context_ranges: list[ContextRange] | None


class Node(TypedDict):
    """Node in the conversation graph."""
    id: str
    conversation_id: str
    message_id: str | None
    type: NodeType
    label: str
    created_at: str
    pos_x: float | None
    pos_y: float | None


class Edge(TypedDict):
    """Edge: target was generated in the context of source."""
    id: str
    conversation_id: str
    source: str
    target: str
    created_at: str


class Graph(TypedDict):
    """Snapshot of one conversation's graph."""
    nodes: dict[str, Node]
    edges: dict[str, Edge]


class GraphDelta(TypedDict):
    """Nodes and edges added by one command."""
    newNodes: list[Node]
    newEdges: list[Edge]


class NodePositionUpdate(TypedDict):
    nodeId: str
    x: float
    y: float
