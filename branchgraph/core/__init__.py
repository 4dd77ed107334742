"""Core conversation graph components."""

from .types import ContextRange, Conversation, Message, Node, Edge, Graph, GraphDelta, NodePositionUpdate
from .constants import *
from .exceptions import *
from .graph import QAPair, build_pairs, anchor_for, check_invariants, incoming_map, outgoing_map
from .ancestors import collect_ancestor_ids, resolve_history
from .deletion import DeletionPlan, plan_subtree_deletion, children_of
from .placement import Rect, Size, Placement, Reflow, find_free_position, place_provisional, reconcile, pair_rects
from .spans import (
    ContextSpanTracker,
    DraftNode,
    PendingContext,
    SerializedDraft,
    ExchangeRequest,
    locate,
    locate_in_node,
    resolve_source_span,
    backlinks,
    dump_context_ranges,
    load_context_ranges,
)
from .tables import ConversationTables
from .persistence import TablePersistence
from .utils import new_id, now_iso, clean_ids

__all__ = [
    # Types
    "ContextRange",
    "Conversation",
    "Message",
    "Node",
    "Edge",
    "Graph",
    "GraphDelta",
    "NodePositionUpdate",
    # Constants
    "NODE_TYPES",
    "DEFAULT_MESSAGE_HISTORY_LIMIT",
    "DEFAULT_NODE_WIDTH",
    "DEFAULT_NODE_HEIGHT",
    "NODE_SPACING",
    "SPIRAL_DIRECTIONS",
    "SPIRAL_MAX_RINGS",
    "DEFAULT_CONVERSATION_TITLE",
    "DEFAULT_SYSTEM_INSTRUCTION",
    "MAX_TITLE_WORDS",
    "AI_MODEL",
    "AI_API_BASE_URL",
    "AI_MAX_ATTEMPTS",
    "SAVE_INTERVAL_SECONDS",
    "MAX_RECENT_BACKUPS",
    "BACKUP_INTERVAL_SECONDS",
    # Exceptions
    "GraphError",
    "ValidationError",
    "ConversationNotFoundError",
    "NodeNotFoundError",
    "InvalidEditError",
    "DraftNotFoundError",
    "AIServiceError",
    # Graph model
    "QAPair",
    "build_pairs",
    "anchor_for",
    "check_invariants",
    "incoming_map",
    "outgoing_map",
    # Algorithms
    "collect_ancestor_ids",
    "resolve_history",
    "DeletionPlan",
    "plan_subtree_deletion",
    "children_of",
    "Rect",
    "Size",
    "Placement",
    "Reflow",
    "find_free_position",
    "place_provisional",
    "reconcile",
    "pair_rects",
    # Spans
    "ContextSpanTracker",
    "DraftNode",
    "PendingContext",
    "SerializedDraft",
    "ExchangeRequest",
    "locate",
    "locate_in_node",
    "resolve_source_span",
    "backlinks",
    "dump_context_ranges",
    "load_context_ranges",
    # Storage
    "ConversationTables",
    "TablePersistence",
    # Utils
    "new_id",
    "now_iso",
    "clean_ids",
]
