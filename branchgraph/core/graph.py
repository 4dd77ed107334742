"""Graph model helpers: adjacency, QA pairs and invariant checks."""

from dataclasses import dataclass

from .types import Graph, Node


@dataclass(frozen=True)
class QAPair:
    """A user node and the AI node answering it (if any)."""
    user_node: Node
    ai_node: Node | None

    @property
    def id(self) -> str:
        return self.user_node["id"]

    @property
    def anchor_id(self) -> str:
        """AI node id if answered, else the user node id."""
        return self.ai_node["id"] if self.ai_node else self.user_node["id"]

    @property
    def anchor(self) -> Node:
        return self.ai_node or self.user_node


def empty_graph() -> Graph:
    return {"nodes": {}, "edges": {}}


def incoming_map(edges) -> dict[str, list[str]]:
    """Reverse adjacency: target -> [source, ...] in edge order."""
    incoming: dict[str, list[str]] = {}
    for edge in _iter_edges(edges):
        incoming.setdefault(edge["target"], []).append(edge["source"])
    return incoming


def outgoing_map(edges) -> dict[str, list[str]]:
    """Forward adjacency: source -> [target, ...] in edge order."""
    outgoing: dict[str, list[str]] = {}
    for edge in _iter_edges(edges):
        outgoing.setdefault(edge["source"], []).append(edge["target"])
    return outgoing


def in_degrees(edges) -> dict[str, int]:
    counts: dict[str, int] = {}
    for edge in _iter_edges(edges):
        counts[edge["target"]] = counts.get(edge["target"], 0) + 1
    return counts


def _iter_edges(edges):
    return edges.values() if isinstance(edges, dict) else edges


def build_pairs(graph: Graph) -> list[QAPair]:
    """
    Group user nodes with the AI node each one produced.

    Pairs are ordered by the user node's creation time.
    """
    nodes = graph["nodes"]
    outgoing = outgoing_map(graph["edges"])
    pairs = []

    for node in nodes.values():
        if node["type"] != "user":
            continue
        ai_node = None
        for target_id in outgoing.get(node["id"], []):
            target = nodes.get(target_id)
            if target and target["type"] == "ai":
                ai_node = target
                break
        pairs.append(QAPair(user_node=node, ai_node=ai_node))

    pairs.sort(key=lambda p: (p.user_node["created_at"], p.id))
    return pairs


def pair_for_node(graph: Graph, node_id: str) -> QAPair | None:
    """Find the pair a node belongs to (as user node or as answer)."""
    for pair in build_pairs(graph):
        if node_id == pair.user_node["id"] or (pair.ai_node and node_id == pair.ai_node["id"]):
            return pair
    return None


def anchor_for(graph: Graph, node_id: str) -> str:
    """Resolve any node id to the anchor of its pair; unknown ids pass through."""
    pair = pair_for_node(graph, node_id)
    return pair.anchor_id if pair else node_id


def node_position(node: Node) -> tuple[float, float] | None:
    if node["pos_x"] is None or node["pos_y"] is None:
        return None
    return node["pos_x"], node["pos_y"]


def pair_position(pair: QAPair) -> tuple[float, float] | None:
    """Saved position of a pair: its anchor's, else its user node's."""
    return node_position(pair.anchor) or node_position(pair.user_node)


def check_invariants(graph: Graph) -> list[str]:
    """
    Check the structural invariants of a conversation graph.

    Returns a list of violations; an empty list means the graph is sound.
    """
    nodes = graph["nodes"]
    edges = graph["edges"]
    problems = []

    conversation_ids = {n["conversation_id"] for n in nodes.values()}
    if len(conversation_ids) > 1:
        problems.append(f"Nodes span several conversations: {sorted(conversation_ids)}")

    for edge in edges.values():
        for end in ("source", "target"):
            if edge[end] not in nodes:
                problems.append(f"Edge '{edge['id']}' has dangling {end} '{edge[end]}'")
        source = nodes.get(edge["source"])
        if source and source["conversation_id"] != edge["conversation_id"]:
            problems.append(f"Edge '{edge['id']}' crosses conversations")

    incoming = incoming_map(edges)
    for node in nodes.values():
        if node["type"] != "ai":
            continue
        parents = incoming.get(node["id"], [])
        if len(parents) != 1:
            problems.append(f"AI node '{node['id']}' has {len(parents)} incoming edges, expected 1")
        elif parents[0] in nodes and nodes[parents[0]]["type"] != "user":
            problems.append(f"AI node '{node['id']}' answers non-user node '{parents[0]}'")

    cycle_node = _find_cycle(nodes, outgoing_map(edges))
    if cycle_node:
        problems.append(f"Cycle detected through node '{cycle_node}'")

    return problems


def _find_cycle(nodes: dict, outgoing: dict[str, list[str]]) -> str | None:
    """Iterative three-colour DFS; returns a node on a cycle, or None."""
    state: dict[str, int] = {}  # 1 = on stack, 2 = done
    for start in nodes:
        if start in state:
            continue
        stack = [(start, iter(outgoing.get(start, [])))]
        state[start] = 1
        while stack:
            current, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[current] = 2
                stack.pop()
            elif state.get(child) == 1:
                return child
            elif child not in state:
                state[child] = 1
                stack.append((child, iter(outgoing.get(child, []))))
    return None
