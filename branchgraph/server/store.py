"""Conversation graph store: serialized commands over the in-memory tables."""

import asyncio
import logging
import threading

from ..config import GraphConfig
from ..core import (
    DEFAULT_CONVERSATION_TITLE,
    DEFAULT_SYSTEM_INSTRUCTION,
    ContextSpanTracker,
    InvalidEditError,
    NodeNotFoundError,
    NodePositionUpdate,
    Size,
    TablePersistence,
    ValidationError,
    anchor_for,
    backlinks,
    build_pairs,
    check_invariants,
    children_of,
    clean_ids,
    find_free_position,
    incoming_map,
    locate_in_node,
    new_id,
    now_iso,
    pair_rects,
    plan_subtree_deletion,
    resolve_history,
)
from ..core.placement import root_parent_rect
from ..core.spans import DraftNode, normalize_context_range, trim_with_ranges
from ..core.utils import require_text
from .ai_service import AIClient

logger = logging.getLogger(__name__)


class ConversationGraphStore:
    """
    Owns the conversation tables and applies one command at a time.

    Reads take the table lock only. Mutating commands also hold the command
    lock for their whole duration, AI calls included, so no command observes
    another one half-applied.
    """

    def __init__(
        self,
        config: GraphConfig,
        ai_client: AIClient,
        broadcast_callback=None,
        start_saver: bool = True,
    ):
        self.config = config
        self.ai_client = ai_client
        self.broadcast_callback = broadcast_callback

        self.persistence = TablePersistence(config.data_path)
        self.tables = self.persistence.load()
        self._trackers: dict[str, ContextSpanTracker] = {}

        # Thread safety
        self.lock = threading.RLock()
        self._commands = asyncio.Lock()
        self.dirty = False

        # Background saver for coalesced writes
        self._stop = threading.Event()
        self.saver_thread = threading.Thread(target=self._periodic_save, daemon=True)

        self._check_loaded_graphs()
        if start_saver:
            self.saver_thread.start()

        logger.info("Conversation graph store initialized")

    def _check_loaded_graphs(self):
        for conversation_id in self.tables.conversations:
            for problem in check_invariants(self.tables.graph(conversation_id)):
                logger.warning(f"Conversation {conversation_id}: {problem}")

    # ========================================================================
    # Conversations
    # ========================================================================

    def create_conversation(self, title: str | None = None) -> dict:
        with self.lock:
            conversation = {
                "id": new_id(),
                "title": title.strip() if title and title.strip() else DEFAULT_CONVERSATION_TITLE,
                "created_at": now_iso(),
                "system_instruction": None,
                "viewport_x": None,
                "viewport_y": None,
                "viewport_zoom": None,
            }
            self.tables.insert_conversation(conversation)
            self._flush()
            logger.info(f"Created conversation '{conversation['id']}'")
            return dict(conversation)

    def list_conversations(self) -> list[dict]:
        with self.lock:
            rows = [dict(c) for c in self.tables.conversations.values()]
        rows.sort(key=lambda c: c["created_at"], reverse=True)
        return rows

    def get_conversation(self, conversation_id: str) -> dict:
        with self.lock:
            return dict(self.tables.conversation(conversation_id))

    def rename_conversation(self, conversation_id: str, title: str) -> dict:
        title = require_text(title, "title")
        with self.lock:
            conversation = self.tables.conversation(conversation_id)
            conversation["title"] = title
            self._flush()
            return dict(conversation)

    def set_system_instruction(self, conversation_id: str, instruction: str | None) -> dict:
        """Set the conversation's system instruction; empty resets to the default."""
        with self.lock:
            conversation = self.tables.conversation(conversation_id)
            conversation["system_instruction"] = instruction.strip() if instruction and instruction.strip() else None
            self._flush()
            return dict(conversation)

    def set_viewport(self, conversation_id: str, x: float, y: float, zoom: float) -> dict:
        """Remember the canvas viewport. Written with the next periodic save."""
        with self.lock:
            conversation = self.tables.conversation(conversation_id)
            conversation["viewport_x"] = x
            conversation["viewport_y"] = y
            conversation["viewport_zoom"] = zoom
            self.dirty = True
            return dict(conversation)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self.lock:
            deleted = self.tables.delete_conversation(conversation_id)
            if deleted:
                self._trackers.pop(conversation_id, None)
                self._flush()
                logger.info(f"Deleted conversation '{conversation_id}'")
            return deleted

    # ========================================================================
    # Graph reads
    # ========================================================================

    def get_graph(self, conversation_id: str) -> dict:
        with self.lock:
            self.tables.conversation(conversation_id)
            graph = self.tables.graph(conversation_id)
            return {
                "nodes": sorted((dict(n) for n in graph["nodes"].values()), key=lambda n: n["created_at"]),
                "edges": sorted((dict(e) for e in graph["edges"].values()), key=lambda e: e["created_at"]),
            }

    def get_context(self, conversation_id: str, seed_ids, limit: int | None = None) -> list[dict]:
        """Ancestor history the AI would see for a question asked from `seed_ids`."""
        with self.lock:
            self.tables.conversation(conversation_id)
            history = resolve_history(
                self.tables.graph(conversation_id),
                self.tables.conversation_messages(conversation_id),
                seed_ids,
                self.config.history_limit if limit is None else limit,
            )
            return [dict(m) for m in history]

    def locate(self, conversation_id: str, node_id: str, text: str) -> tuple[int, int] | None:
        with self.lock:
            self.tables.conversation(conversation_id)
            return locate_in_node(self.tables.graph(conversation_id), node_id, text)

    def backlinks(self, conversation_id: str, node_id: str) -> list[dict]:
        with self.lock:
            self.tables.conversation(conversation_id)
            return backlinks(
                self.tables.graph(conversation_id),
                self.tables.conversation_messages(conversation_id),
                node_id,
            )

    # ========================================================================
    # Graph commands
    # ========================================================================

    async def create_exchange(
        self,
        conversation_id: str,
        content: str,
        from_node_ids=None,
        draft_node_id: str | None = None,
        position: dict | None = None,
        context_ranges=None,
    ) -> dict:
        """
        Ask a question from zero or more earlier nodes and record the answer.

        The AI is called before anything is written, so a failed call leaves
        the graph untouched.
        """
        async with self._commands:
            with self.lock:
                conversation = self.tables.conversation(conversation_id)
                require_text(content, "content")
                graph = self.tables.graph(conversation_id)
                ranges = [normalize_context_range(r) for r in context_ranges or []]
                self._check_context_ranges(graph, content, ranges)
                content, ranges = trim_with_ranges(content, ranges)
                if draft_node_id and draft_node_id in self.tables.nodes:
                    raise ValidationError(f"Node id '{draft_node_id}' is already in use")

                from_ids = self._anchors(graph, from_node_ids)
                history = resolve_history(
                    graph,
                    self.tables.conversation_messages(conversation_id),
                    from_ids,
                    self.config.history_limit,
                )
                system_instruction = conversation["system_instruction"] or DEFAULT_SYSTEM_INSTRUCTION
                needs_title = not graph["nodes"] and conversation["title"] == DEFAULT_CONVERSATION_TITLE

            reply = await self.ai_client.generate_reply(system_instruction, history, content)

            with self.lock:
                self.tables.conversation(conversation_id)
                graph = self.tables.graph(conversation_id)
                from_ids = self._anchors(graph, from_ids)
                if position is None:
                    x, y = self._place_new_pair(graph, from_ids)
                else:
                    x, y = position["x"], position["y"]

                user_message = self._message(conversation_id, "user", content, ranges or None)
                ai_message = self._message(conversation_id, "ai", reply, None)
                user_node = self._node(conversation_id, user_message, x, y, node_id=draft_node_id)
                ai_node = self._node(conversation_id, ai_message, x, y)

                new_edges = [self._edge(conversation_id, source, user_node["id"]) for source in from_ids]
                new_edges.append(self._edge(conversation_id, user_node["id"], ai_node["id"]))

                for message in (user_message, ai_message):
                    self.tables.insert_message(message)
                for node in (user_node, ai_node):
                    self.tables.insert_node(node)
                for edge in new_edges:
                    self.tables.insert_edge(edge)
                self._flush()

                if draft_node_id:
                    self._tracker(conversation_id).remove_draft(draft_node_id)

            logger.info(
                f"Recorded exchange in '{conversation_id}' from {len(from_ids)} parents "
                f"(history {len(history)} messages)"
            )

            if needs_title:
                await self._generate_title(conversation_id, content, reply)

            result = {
                "userMessage": dict(user_message),
                "aiMessage": dict(ai_message),
                "graphDelta": {
                    "newNodes": [dict(user_node), dict(ai_node)],
                    "newEdges": [dict(e) for e in new_edges],
                },
            }

        await self._broadcast(conversation_id, {"type": "exchange_created", **result["graphDelta"]})
        return result

    async def answer_node(self, conversation_id: str, node_id: str) -> dict:
        """Generate the missing answer for a user node, e.g. after it was edited."""
        async with self._commands:
            with self.lock:
                conversation = self.tables.conversation(conversation_id)
                graph = self.tables.graph(conversation_id)
                node = graph["nodes"].get(node_id)
                if node is None:
                    raise NodeNotFoundError(conversation_id, node_id)
                if node["type"] != "user":
                    raise InvalidEditError(conversation_id, node_id)
                if any(graph["nodes"][c]["type"] == "ai" for c in children_of(graph, node_id)):
                    raise ValidationError(f"Node '{node_id}' is already answered")

                parents = incoming_map(graph["edges"]).get(node_id, [])
                history = resolve_history(
                    graph,
                    self.tables.conversation_messages(conversation_id),
                    parents,
                    self.config.history_limit,
                )
                system_instruction = conversation["system_instruction"] or DEFAULT_SYSTEM_INSTRUCTION
                question = node["label"]

            reply = await self.ai_client.generate_reply(system_instruction, history, question)

            with self.lock:
                node = self.tables.nodes.get(node_id)
                if node is None:
                    raise NodeNotFoundError(conversation_id, node_id)
                ai_message = self._message(conversation_id, "ai", reply, None)
                ai_node = self._node(conversation_id, ai_message, node["pos_x"], node["pos_y"])
                edge = self._edge(conversation_id, node_id, ai_node["id"])
                self.tables.insert_message(ai_message)
                self.tables.insert_node(ai_node)
                self.tables.insert_edge(edge)
                self._flush()

            result = {"aiMessage": dict(ai_message), "aiNode": dict(ai_node), "edge": dict(edge)}

        await self._broadcast(
            conversation_id, {"type": "exchange_created", "newNodes": [result["aiNode"]], "newEdges": [result["edge"]]}
        )
        return result

    async def edit_node(self, conversation_id: str, node_id: str, new_content: str) -> dict:
        """
        Rewrite a user node's question and drop everything answered from it.

        Each child subtree is deleted with join preservation.
        """
        async with self._commands:
            with self.lock:
                self.tables.conversation(conversation_id)
                node = self.tables.nodes.get(node_id)
                if node is None or node["conversation_id"] != conversation_id:
                    raise NodeNotFoundError(conversation_id, node_id)
                if node["type"] != "user":
                    raise InvalidEditError(conversation_id, node_id)
                content = require_text(new_content, "content")

                message = self.tables.messages.get(node["message_id"]) if node["message_id"] else None
                if message is not None:
                    message["content"] = content
                    # Offsets into the old text no longer hold
                    message["context_ranges"] = None
                node["label"] = content

                deleted = []
                for child_id in children_of(self.tables.graph(conversation_id), node_id):
                    deleted.extend(self._delete_subtree(conversation_id, child_id))
                self._flush()

                updated = dict(node)

            logger.info(f"Edited node '{node_id}' in '{conversation_id}', removed {len(deleted)} descendants")

        await self._broadcast(
            conversation_id, {"type": "node_edited", "node": updated, "deletedNodeIds": deleted}
        )
        return updated

    async def delete_node(self, conversation_id: str, node_id: str) -> dict:
        """Delete a node and the descendants nothing else reaches. Unknown nodes are a no-op."""
        async with self._commands:
            with self.lock:
                self.tables.conversation(conversation_id)
                deleted = self._delete_subtree(conversation_id, node_id)
                if deleted:
                    self._flush()
                    logger.info(f"Deleted {len(deleted)} nodes from '{conversation_id}' starting at '{node_id}'")

        if deleted:
            await self._broadcast(conversation_id, {"type": "nodes_deleted", "deletedNodeIds": deleted})
        return {"deletedNodeIds": deleted}

    async def update_node_positions(self, conversation_id: str, positions: list[NodePositionUpdate]) -> int:
        """
        Move nodes. Written with the next periodic save.

        Entries for unknown nodes or without numeric coordinates are skipped.
        """
        async with self._commands:
            with self.lock:
                self.tables.conversation(conversation_id)
                applied = []
                for p in positions or []:
                    node = self.tables.nodes.get(p.get("nodeId"))
                    x, y = p.get("x"), p.get("y")
                    if node is None or node["conversation_id"] != conversation_id:
                        continue
                    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (x, y)):
                        continue
                    node["pos_x"], node["pos_y"] = x, y
                    applied.append({"nodeId": node["id"], "x": x, "y": y})
                if applied:
                    self.dirty = True

        if applied:
            await self._broadcast(conversation_id, {"type": "positions_updated", "positions": applied})
        return len(applied)

    # ========================================================================
    # Drafts
    # ========================================================================

    def _tracker(self, conversation_id: str) -> ContextSpanTracker:
        """Draft tracker of a conversation. Caller must hold lock."""
        self.tables.conversation(conversation_id)
        return self._trackers.setdefault(conversation_id, ContextSpanTracker())

    def create_draft(self, conversation_id: str, anchor_node_id: str | None = None, from_node_ids=None) -> dict:
        with self.lock:
            tracker = self._tracker(conversation_id)
            graph = self.tables.graph(conversation_id)
            anchor = None
            if anchor_node_id:
                if anchor_node_id not in graph["nodes"]:
                    raise NodeNotFoundError(conversation_id, anchor_node_id)
                anchor = anchor_for(graph, anchor_node_id)
            from_ids = [anchor_for(graph, i) for i in clean_ids(from_node_ids) if i in graph["nodes"]]
            return self._draft_view(tracker, tracker.create_draft(anchor, from_ids))

    def get_draft(self, conversation_id: str, draft_id: str) -> dict:
        with self.lock:
            tracker = self._tracker(conversation_id)
            return self._draft_view(tracker, tracker.get_draft(draft_id))

    def list_drafts(self, conversation_id: str) -> list[dict]:
        with self.lock:
            tracker = self._tracker(conversation_id)
            return [self._draft_view(tracker, d) for d in tracker.drafts.values()]

    def append_draft_text(self, conversation_id: str, draft_id: str, text: str) -> dict:
        with self.lock:
            tracker = self._tracker(conversation_id)
            tracker.append_text(draft_id, text)
            return self._draft_view(tracker, tracker.get_draft(draft_id))

    def attach_context(
        self,
        conversation_id: str,
        draft_id: str,
        quoted_text: str,
        source_node_id: str,
        source_start_pos: int | None = None,
        source_end_pos: int | None = None,
        entry_id: str | None = None,
    ) -> dict:
        """Quote part of a node's text into a draft."""
        with self.lock:
            tracker = self._tracker(conversation_id)
            source = self.tables.nodes.get(source_node_id)
            if source is None or source["conversation_id"] != conversation_id:
                raise NodeNotFoundError(conversation_id, source_node_id)
            tracker.attach(
                draft_id,
                quoted_text,
                source_node_id,
                source_start_pos,
                source_end_pos,
                source_text=source["label"],
                entry_id=entry_id,
            )
            return self._draft_view(tracker, tracker.get_draft(draft_id))

    def discard_draft(self, conversation_id: str, draft_id: str) -> bool:
        with self.lock:
            return self._tracker(conversation_id).remove_draft(draft_id)

    async def send_draft(self, conversation_id: str, draft_id: str, position: dict | None = None) -> dict:
        """Promote a draft into an exchange; the draft survives a failed AI call."""
        with self.lock:
            request = self._tracker(conversation_id).promote(draft_id, keep=True)
        return await self.create_exchange(
            conversation_id,
            request.content,
            request.from_node_ids,
            draft_node_id=request.draft_node_id,
            position=position,
            context_ranges=request.context_ranges,
        )

    @staticmethod
    def _draft_view(tracker: ContextSpanTracker, draft: DraftNode) -> dict:
        serialized = tracker.serialize(draft.id)
        return {
            "id": draft.id,
            "anchorNodeId": draft.anchor_node_id,
            "fromNodeIds": list(draft.from_node_ids),
            "pendingContexts": [
                {
                    "id": c.id,
                    "text": c.text,
                    "sourceNodeId": c.source_node_id,
                    "sourceStartPos": c.source_start_pos,
                    "sourceEndPos": c.source_end_pos,
                }
                for c in draft.pending_contexts
            ],
            "text": serialized.text,
            "contextRanges": serialized.context_ranges,
        }

    # ========================================================================
    # Internals
    # ========================================================================

    @staticmethod
    def _anchors(graph, node_ids) -> list[str]:
        """Known ids resolved to their pair anchors, first-seen order."""
        return clean_ids([anchor_for(graph, i) for i in clean_ids(node_ids) if i in graph["nodes"]])

    @staticmethod
    def _check_context_ranges(graph, content: str, ranges):
        """Reject ranges past the end of `content` or quoting unknown nodes."""
        for r in ranges:
            if r["endPos"] > len(content):
                raise ValidationError(
                    f"context range {r['startPos']}..{r['endPos']} exceeds content length {len(content)}"
                )
            if r["sourceNodeId"] not in graph["nodes"]:
                raise ValidationError(f"context range quotes unknown node '{r['sourceNodeId']}'")

    def _delete_subtree(self, conversation_id: str, root_id: str) -> list[str]:
        """Apply a deletion plan. Caller must hold lock."""
        plan = plan_subtree_deletion(self.tables.graph(conversation_id), root_id)
        if not plan:
            return []
        self.tables.delete_messages(conversation_id, plan.message_ids)
        deleted, edges_removed = self.tables.delete_nodes(conversation_id, plan.node_ids)
        tracker = self._trackers.get(conversation_id)
        if tracker:
            tracker.remove_drafts_for_anchors(deleted)
        logger.debug(f"Removed {len(deleted)} nodes and {edges_removed} edges under '{root_id}'")
        return deleted

    def _place_new_pair(self, graph, from_ids: list[str]) -> tuple[float, float]:
        """Position for a new pair next to its first positioned parent. Caller must hold lock."""
        rects = pair_rects(graph)
        parent = None
        for from_id in from_ids:
            parent = rects.get(anchor_for(graph, from_id))
            if parent:
                break
        if parent is None:
            parent = root_parent_rect(len(build_pairs(graph)), spacing=self.config.node_spacing)
        placement = find_free_position(parent, Size(), rects.values(), self.config.node_spacing)
        logger.debug(f"Placed new pair at ({placement.x}, {placement.y}) via {placement.strategy}")
        return placement.x, placement.y

    async def _generate_title(self, conversation_id: str, question: str, answer: str):
        title = await self.ai_client.generate_title(question, answer)
        with self.lock:
            conversation = self.tables.conversations.get(conversation_id)
            if conversation and conversation["title"] == DEFAULT_CONVERSATION_TITLE:
                conversation["title"] = title
                self._flush()

    @staticmethod
    def _message(conversation_id: str, author: str, content: str, context_ranges) -> dict:
        return {
            "id": new_id(),
            "conversation_id": conversation_id,
            "author": author,
            "content": content,
            "created_at": now_iso(),
            "context_ranges": context_ranges,
        }

    @staticmethod
    def _node(conversation_id: str, message: dict, x, y, node_id: str | None = None) -> dict:
        return {
            "id": node_id or new_id(),
            "conversation_id": conversation_id,
            "message_id": message["id"],
            "type": message["author"],
            "label": message["content"],
            "created_at": message["created_at"],
            "pos_x": x,
            "pos_y": y,
        }

    @staticmethod
    def _edge(conversation_id: str, source: str, target: str) -> dict:
        return {
            "id": new_id(),
            "conversation_id": conversation_id,
            "source": source,
            "target": target,
            "created_at": now_iso(),
        }

    async def _broadcast(self, conversation_id: str, message: dict):
        if not self.broadcast_callback:
            return
        try:
            await self.broadcast_callback(conversation_id, {**message, "conversation_id": conversation_id})
        except Exception as e:
            logger.error(f"Broadcast failed for {conversation_id}: {e}")

    # ========================================================================
    # Maintenance
    # ========================================================================

    def stats(self) -> dict:
        with self.lock:
            return self.tables.counts()

    def _flush(self) -> bool:
        """Save now. Caller must hold lock."""
        success = self.persistence.save(self.tables)
        if success:
            self.dirty = False
            self.persistence.maybe_backup()
        else:
            self.dirty = True
        return success

    def _periodic_save(self):
        """Background thread that writes coalesced changes."""
        while not self._stop.wait(self.config.save_interval):
            with self.lock:
                if self.dirty:
                    self._flush()

    def shutdown(self):
        """Gracefully shutdown the store."""
        logger.info("Shutting down graph store...")
        self._stop.set()
        if self.saver_thread.is_alive():
            self.saver_thread.join(timeout=5)

        with self.lock:
            if self.dirty:
                self._flush()

        logger.info("Graph store shutdown complete")
