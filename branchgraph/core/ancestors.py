"""Ancestor resolution: conversation history for an AI call."""

import logging

from .constants import DEFAULT_MESSAGE_HISTORY_LIMIT
from .graph import incoming_map
from .types import Graph, Message
from .utils import clean_ids

logger = logging.getLogger(__name__)

_AUTHOR_ORDER = {"user": 0, "ai": 1}


def collect_ancestor_ids(edges, seed_ids) -> list[str]:
    """
    Walk backward from the seeds, seeds included.

    Returns node ids in visit order. Seeds absent from the graph are kept as
    ancestor-less nodes; shared ancestors are visited once.
    """
    seeds = clean_ids(seed_ids)
    if not seeds:
        return []

    incoming = incoming_map(edges)
    visited = set()
    order = []
    stack = list(seeds)

    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        order.append(current)
        for parent_id in incoming.get(current, []):
            if parent_id not in visited:
                stack.append(parent_id)

    return order


def message_sort_key(message: Message) -> tuple:
    return (
        message["created_at"],
        _AUTHOR_ORDER.get(message["author"], 2),
        message["id"],
    )


def resolve_history(
    graph: Graph,
    messages: dict[str, Message],
    seed_ids,
    limit: int = DEFAULT_MESSAGE_HISTORY_LIMIT,
) -> list[Message]:
    """
    Messages of all ancestors of the seeds, oldest first.

    Only the most recent `limit` messages are kept.
    """
    if limit <= 0:
        return []

    ancestor_ids = collect_ancestor_ids(graph["edges"], seed_ids)
    if not ancestor_ids:
        return []

    nodes = graph["nodes"]
    history = []
    seen_messages = set()
    for node_id in ancestor_ids:
        node = nodes.get(node_id)
        if not node or not node["message_id"] or node["message_id"] in seen_messages:
            continue
        seen_messages.add(node["message_id"])
        message = messages.get(node["message_id"])
        if message is not None:
            history.append(message)

    history.sort(key=message_sort_key)
    if len(history) > limit:
        history = history[-limit:]

    logger.debug(f"Resolved {len(history)} history messages from {len(ancestor_ids)} ancestor nodes")
    return history
