"""Join-preserving subtree deletion."""

import logging
from dataclasses import dataclass, field

from .graph import in_degrees, outgoing_map
from .types import Graph

logger = logging.getLogger(__name__)


@dataclass
class DeletionPlan:
    """Nodes to remove and the messages they own."""
    node_ids: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.node_ids)


def plan_subtree_deletion(graph: Graph, root_id: str) -> DeletionPlan:
    """
    Compute which nodes go when `root_id` is deleted.

    The root is always removed. A child is followed only when the edge being
    severed is its sole incoming edge; children with another parent stay, and
    the walk does not continue past them. Only the neighbourhood reachable
    from the root is inspected.
    """
    nodes = graph["nodes"]
    if root_id not in nodes:
        return DeletionPlan()

    outgoing = outgoing_map(graph["edges"])
    indegree = in_degrees(graph["edges"])

    to_delete: dict[str, None] = {}
    stack = [root_id]

    while stack:
        current = stack.pop()
        if current in to_delete:
            continue
        to_delete[current] = None

        for child in outgoing.get(current, []):
            if child not in nodes or indegree.get(child, 0) > 1:
                continue
            if child not in to_delete:
                stack.append(child)

    node_ids = list(to_delete)
    message_ids = [nodes[node_id]["message_id"] for node_id in node_ids if nodes[node_id]["message_id"]]

    logger.debug(f"Deletion from '{root_id}' covers {len(node_ids)} nodes")
    return DeletionPlan(node_ids=node_ids, message_ids=message_ids)


def children_of(graph: Graph, node_id: str) -> list[str]:
    """Direct children of a node, in edge order."""
    return list(outgoing_map(graph["edges"]).get(node_id, []))
