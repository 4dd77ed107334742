"""FastAPI HTTP server for branching conversation graphs."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..config import GraphConfig
from ..core.exceptions import (
    AIServiceError,
    ConversationNotFoundError,
    DraftNotFoundError,
    GraphError,
    NodeNotFoundError,
)
from .ai_service import create_ai_client
from .store import ConversationGraphStore
from .websocket import ConnectionManager

# Configure logging
log_level = os.getenv("BG_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (ConversationNotFoundError, NodeNotFoundError, DraftNotFoundError)


# ============================================================================
# Request/Response Models
# ============================================================================

class CamelModel(BaseModel):
    """Accepts both the camelCase wire names and the field names."""
    model_config = ConfigDict(populate_by_name=True)


class Position(BaseModel):
    x: float
    y: float


class ConversationCreateRequest(CamelModel):
    """Request to create a conversation."""
    title: str | None = Field(None, description="Conversation title")


class ConversationUpdateRequest(CamelModel):
    """Request to rename a conversation."""
    title: str = Field(..., description="New title")


class SystemInstructionRequest(CamelModel):
    system_instruction: str | None = Field(
        None, alias="systemInstruction", description="Instruction for the AI; empty resets to default"
    )


class ViewportRequest(CamelModel):
    x: float
    y: float
    zoom: float


class MessageRequest(CamelModel):
    """Request to ask a question and record the answer."""
    conversation_id: str = Field(..., alias="conversationId")
    content: str = Field(..., description="Question text")
    from_node_ids: list[str] = Field(default_factory=list, alias="fromNodeIds", description="Context nodes")
    draft_node_id: str | None = Field(None, alias="draftNodeId", description="Id to give the new user node")
    position: Position | None = Field(None, description="Explicit position for the new pair")
    context_ranges: list[dict] | None = Field(None, alias="contextRanges", description="Quoted spans")


class NodePosition(CamelModel):
    node_id: str = Field(..., alias="nodeId")
    x: float
    y: float


class PositionsRequest(CamelModel):
    positions: list[NodePosition]


class NodeEditRequest(CamelModel):
    content: str = Field(..., description="New question text")


class DraftCreateRequest(CamelModel):
    anchor_node_id: str | None = Field(None, alias="anchorNodeId")
    from_node_ids: list[str] | None = Field(None, alias="fromNodeIds")


class DraftTextRequest(CamelModel):
    text: str


class DraftContextRequest(CamelModel):
    """Request to quote part of a node into a draft."""
    text: str = Field(..., description="Quoted text")
    source_node_id: str = Field(..., alias="sourceNodeId")
    source_start_pos: int | None = Field(None, alias="sourceStartPos")
    source_end_pos: int | None = Field(None, alias="sourceEndPos")
    entry_id: str | None = Field(None, alias="id", description="Client id; repeats are ignored")


class DraftSendRequest(CamelModel):
    position: Position | None = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    ai_provider: str
    conversations: int
    active_connections: int


# ============================================================================
# Global State
# ============================================================================

store: ConversationGraphStore | None = None
connection_manager: ConnectionManager | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    global store, connection_manager

    # Startup
    logger.info("Starting branchgraph HTTP server...")

    config = GraphConfig.from_env()
    ai_client = create_ai_client(config)
    connection_manager = ConnectionManager()

    async def broadcast_callback(conversation_id: str, message: dict):
        """Broadcast changes to connected WebSocket clients."""
        await connection_manager.broadcast_to_conversation(conversation_id, message)

    store = ConversationGraphStore(config, ai_client, broadcast_callback)

    logger.info(f"Server ready (AI provider: {ai_client.name}, data: {config.data_path})")

    yield

    # Shutdown
    if store:
        store.shutdown()
    await ai_client.aclose()

    logger.info("Server stopped")


# Create FastAPI app
app = FastAPI(
    title="branchgraph",
    description="Branching question-and-answer graphs over an AI collaborator",
    version=__version__,
    lifespan=lifespan
)


def _store() -> ConversationGraphStore:
    if not store:
        raise HTTPException(status_code=500, detail="Store not initialized")
    return store


# ============================================================================
# Conversations
# ============================================================================

@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "ai_provider": store.ai_client.name if store else "none",
        "conversations": store.stats()["conversations"] if store else 0,
        "active_connections": connection_manager.count() if connection_manager else 0,
    }


@app.get("/api/conversations")
async def list_conversations():
    return _store().list_conversations()


@app.post("/api/conversations")
async def create_conversation(request: ConversationCreateRequest):
    graph_store = _store()
    try:
        return graph_store.create_conversation(request.title)
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating conversation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    graph_store = _store()
    try:
        return graph_store.get_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.patch("/api/conversations/{conversation_id}")
async def rename_conversation(conversation_id: str, request: ConversationUpdateRequest):
    graph_store = _store()
    try:
        return graph_store.rename_conversation(conversation_id, request.title)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error renaming conversation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    """Delete a conversation with all of its messages, nodes and edges."""
    graph_store = _store()
    try:
        deleted = graph_store.delete_conversation(conversation_id)
    except Exception as e:
        logger.error(f"Error deleting conversation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Conversation '{conversation_id}' not found")
    return {"deleted": True}


@app.put("/api/conversations/{conversation_id}/system-instruction")
async def set_system_instruction(conversation_id: str, request: SystemInstructionRequest):
    graph_store = _store()
    try:
        return graph_store.set_system_instruction(conversation_id, request.system_instruction)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error setting system instruction: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.put("/api/conversations/{conversation_id}/viewport")
async def set_viewport(conversation_id: str, request: ViewportRequest):
    graph_store = _store()
    try:
        return graph_store.set_viewport(conversation_id, request.x, request.y, request.zoom)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error saving viewport: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ============================================================================
# Graph
# ============================================================================

@app.get("/api/graph/{conversation_id}")
async def get_graph(conversation_id: str):
    """Nodes and edges of a conversation, oldest first."""
    graph_store = _store()
    try:
        return graph_store.get_graph(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error reading graph: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/graph/{conversation_id}/context")
async def get_context(conversation_id: str, seed: list[str] = Query(default=[]), limit: int | None = None):
    """
    Preview the history the AI would receive when asking from `seed` nodes.
    Clients call: /api/graph/{id}/context?seed=a&seed=b
    """
    graph_store = _store()
    try:
        return graph_store.get_context(conversation_id, seed, limit)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error resolving context: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/graph/{conversation_id}/positions")
async def update_positions(conversation_id: str, request: PositionsRequest):
    graph_store = _store()
    positions = [p.model_dump(by_alias=True) for p in request.positions]
    try:
        updated = await graph_store.update_node_positions(conversation_id, positions)
        return {"updated": updated}
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating positions: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/messages")
async def create_message(request: MessageRequest):
    """Ask a question from zero or more nodes and record the AI's answer."""
    graph_store = _store()
    try:
        return await graph_store.create_exchange(
            request.conversation_id,
            request.content,
            request.from_node_ids,
            draft_node_id=request.draft_node_id,
            position=request.position.model_dump() if request.position else None,
            context_ranges=request.context_ranges,
        )
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.patch("/api/graph/{conversation_id}/nodes/{node_id}")
async def edit_node(conversation_id: str, node_id: str, request: NodeEditRequest):
    """Edit a user node; every descendant answer is removed."""
    graph_store = _store()
    try:
        return await graph_store.edit_node(conversation_id, node_id, request.content)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error editing node: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.delete("/api/graph/{conversation_id}/nodes/{node_id}")
async def delete_node(conversation_id: str, node_id: str):
    """Delete a node and the descendants no other branch reaches."""
    graph_store = _store()
    try:
        return await graph_store.delete_node(conversation_id, node_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting node: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/graph/{conversation_id}/nodes/{node_id}/answer")
async def answer_node(conversation_id: str, node_id: str):
    graph_store = _store()
    try:
        return await graph_store.answer_node(conversation_id, node_id)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error answering node: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/graph/{conversation_id}/nodes/{node_id}/locate")
async def locate_text(conversation_id: str, node_id: str, text: str):
    graph_store = _store()
    try:
        span = graph_store.locate(conversation_id, node_id, text)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"start": span[0], "end": span[1]} if span else None


@app.get("/api/graph/{conversation_id}/nodes/{node_id}/backlinks")
async def get_backlinks(conversation_id: str, node_id: str):
    graph_store = _store()
    try:
        return graph_store.backlinks(conversation_id, node_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error reading backlinks: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ============================================================================
# Drafts
# ============================================================================

@app.get("/api/graph/{conversation_id}/drafts")
async def list_drafts(conversation_id: str):
    graph_store = _store()
    try:
        return graph_store.list_drafts(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/api/graph/{conversation_id}/drafts")
async def create_draft(conversation_id: str, request: DraftCreateRequest):
    graph_store = _store()
    try:
        return graph_store.create_draft(conversation_id, request.anchor_node_id, request.from_node_ids)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating draft: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/graph/{conversation_id}/drafts/{draft_id}")
async def get_draft(conversation_id: str, draft_id: str):
    graph_store = _store()
    try:
        return graph_store.get_draft(conversation_id, draft_id)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/api/graph/{conversation_id}/drafts/{draft_id}")
async def discard_draft(conversation_id: str, draft_id: str):
    graph_store = _store()
    try:
        discarded = graph_store.discard_draft(conversation_id, draft_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"discarded": discarded}


@app.post("/api/graph/{conversation_id}/drafts/{draft_id}/text")
async def append_draft_text(conversation_id: str, draft_id: str, request: DraftTextRequest):
    graph_store = _store()
    try:
        return graph_store.append_draft_text(conversation_id, draft_id, request.text)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/api/graph/{conversation_id}/drafts/{draft_id}/contexts")
async def attach_context(conversation_id: str, draft_id: str, request: DraftContextRequest):
    """Quote part of a node into a draft."""
    graph_store = _store()
    try:
        return graph_store.attach_context(
            conversation_id,
            draft_id,
            request.text,
            request.source_node_id,
            request.source_start_pos,
            request.source_end_pos,
            entry_id=request.entry_id,
        )
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error attaching context: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/graph/{conversation_id}/drafts/{draft_id}/send")
async def send_draft(conversation_id: str, draft_id: str, request: DraftSendRequest | None = None):
    """Send a draft as a question; the draft is kept if the AI call fails."""
    graph_store = _store()
    position = request.position.model_dump() if request and request.position else None
    try:
        return await graph_store.send_draft(conversation_id, draft_id, position)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except (GraphError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending draft: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ============================================================================
# WebSocket
# ============================================================================

@app.websocket("/ws/{conversation_id}")
async def websocket_endpoint(websocket: WebSocket, conversation_id: str):
    """
    WebSocket endpoint for live graph updates of one conversation.
    Clients connect with: ws://localhost:8787/ws/<conversation_id>
    """
    if not connection_manager or not store:
        await websocket.close(code=1011, reason="Server not initialized")
        return

    try:
        store.get_conversation(conversation_id)
    except ConversationNotFoundError:
        await websocket.close(code=1008, reason="Unknown conversation")
        return

    await connection_manager.connect(websocket, conversation_id)

    try:
        # Keep connection alive and receive messages (for heartbeat/ping)
        while True:
            data = await websocket.receive_text()
            await websocket.send_json({"type": "pong", "message": data})

    except WebSocketDisconnect:
        connection_manager.disconnect(websocket, conversation_id)
    except Exception as e:
        logger.error(f"WebSocket error for {conversation_id}: {e}")
        connection_manager.disconnect(websocket, conversation_id)


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    config = GraphConfig.from_env()
    logger.info(f"Starting server on {config.host}:{config.port}")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
    )
