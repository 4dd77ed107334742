"""
branchgraph MCP Server
Exposes conversation graphs to MCP clients over stdio: read a graph, preview
ancestor context, ask questions from chosen nodes, edit and delete nodes.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ..config import GraphConfig
from ..core.exceptions import GraphError
from .ai_service import create_ai_client
from .store import ConversationGraphStore

# Configure logging to stderr (never stdout for MCP)
log_level = os.getenv("BG_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


# Initialize server
app = Server("branchgraph")

# Global store instance
store: ConversationGraphStore | None = None


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available conversation graph tools."""
    return [
        Tool(
            name="graph_list_conversations",
            description="List conversations, newest first. Use to find a conversation_id.",
            inputSchema={
                "type": "object",
                "properties": {}
            }
        ),
        Tool(
            name="graph_read",
            description="Read all nodes and edges of a conversation graph.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string", "description": "Conversation ID"}
                },
                "required": ["conversation_id"]
            }
        ),
        Tool(
            name="graph_context",
            description="Preview the message history the AI receives when asking from the given nodes. Every ancestor is included, oldest first, last `limit` messages.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string", "description": "Conversation ID"},
                    "node_ids": {"type": "array", "items": {"type": "string"}, "description": "Nodes to ask from"},
                    "limit": {"type": "integer", "description": "Optional: maximum number of messages"}
                },
                "required": ["conversation_id", "node_ids"]
            }
        ),
        Tool(
            name="graph_ask",
            description="Ask a question from zero or more nodes. Creates a question node and the AI's answer node. Omit conversation_id to start a new conversation.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string", "description": "Optional: conversation ID"},
                    "content": {"type": "string", "description": "Question text"},
                    "from_node_ids": {"type": "array", "items": {"type": "string"}, "description": "Context nodes"}
                },
                "required": ["content"]
            }
        ),
        Tool(
            name="graph_edit_node",
            description="Rewrite a question node. Every answer and follow-up that depends only on it is deleted.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string", "description": "Conversation ID"},
                    "node_id": {"type": "string", "description": "User node ID"},
                    "content": {"type": "string", "description": "New question text"}
                },
                "required": ["conversation_id", "node_id", "content"]
            }
        ),
        Tool(
            name="graph_delete_node",
            description="Delete a node and the descendants no other branch reaches.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string", "description": "Conversation ID"},
                    "node_id": {"type": "string", "description": "Node ID to delete"}
                },
                "required": ["conversation_id", "node_id"]
            }
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls with uniform error handling."""
    arguments = arguments or {}

    try:
        if name == "graph_list_conversations":
            result = store.list_conversations()
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "graph_read":
            result = store.get_graph(arguments["conversation_id"])
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "graph_context":
            result = store.get_context(
                arguments["conversation_id"],
                arguments.get("node_ids"),
                arguments.get("limit")
            )
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "graph_ask":
            content = arguments["content"]
            conversation_id = arguments.get("conversation_id")
            if not conversation_id:
                conversation_id = store.create_conversation()["id"]
            result = await store.create_exchange(
                conversation_id,
                content,
                arguments.get("from_node_ids")
            )
            result["conversationId"] = conversation_id
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "graph_edit_node":
            result = await store.edit_node(
                arguments["conversation_id"],
                arguments["node_id"],
                arguments["content"]
            )
            return [TextContent(type="text", text=json.dumps(result))]

        elif name == "graph_delete_node":
            result = await store.delete_node(
                arguments["conversation_id"],
                arguments["node_id"]
            )
            return [TextContent(type="text", text=json.dumps(result))]

        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

    except (GraphError, KeyError) as e:
        # Structured error response for known errors
        logger.warning(f"Graph error in {name}: {e}")
        return [TextContent(type="text", text=json.dumps({"error": str(e)}))]

    except Exception as e:
        # Unexpected errors
        logger.error(f"Unexpected error in {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=json.dumps({"error": f"Internal error: {str(e)}"}))]


async def main():
    """Main entry point."""
    global store

    config = GraphConfig.from_env()
    ai_client = create_ai_client(config)
    store = ConversationGraphStore(config, ai_client)

    logger.info(f"Starting branchgraph MCP server (AI provider: {ai_client.name})...")

    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        if store:
            store.shutdown()
        await ai_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
