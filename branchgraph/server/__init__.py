"""Adapters over the conversation graph store: HTTP, WebSocket, MCP and the AI client."""
