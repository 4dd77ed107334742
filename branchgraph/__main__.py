"""
Command line entry point.

Usage:
    branchgraph serve [--port PORT] [--host HOST] [--log-level LEVEL]
    branchgraph mcp

Environment variables:
    BG_HTTP_PORT: Server port (default: 8787)
    BG_HTTP_HOST: Server host (default: 127.0.0.1)
    BG_LOG_LEVEL: Logging level (default: INFO)
    BG_DATA_PATH: Table file (default: ~/.branchgraph/graph.json)
    GEMINI_API_KEY: Enables the Gemini provider
"""

import argparse
import asyncio
import os
import sys


def serve(args):
    """Start the HTTP server."""
    # Set environment variables from args if provided
    if args.port:
        os.environ["BG_HTTP_PORT"] = str(args.port)
    if args.host:
        os.environ["BG_HTTP_HOST"] = args.host
    if args.log_level:
        os.environ["BG_LOG_LEVEL"] = args.log_level.upper()

    import uvicorn

    from .config import GraphConfig
    from .server.app import app

    config = GraphConfig.from_env()

    print(f"Starting branchgraph HTTP server on {config.host}:{config.port}")
    print(f"Log level: {config.log_level}")
    print("Press Ctrl+C to stop")
    print("")

    try:
        uvicorn.run(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        sys.exit(1)


def mcp(args):
    """Start the MCP server on stdio."""
    if args.log_level:
        os.environ["BG_LOG_LEVEL"] = args.log_level.upper()

    from .server.mcp_server import main as mcp_main

    asyncio.run(mcp_main())


def main(argv=None):
    parser = argparse.ArgumentParser(prog="branchgraph", description="Branching conversation graph server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP and WebSocket server")
    serve_parser.add_argument("--port", type=int, default=None, help="Server port (default: 8787)")
    serve_parser.add_argument("--host", default=None, help="Server host (default: 127.0.0.1)")
    serve_parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    serve_parser.set_defaults(func=serve)

    mcp_parser = subparsers.add_parser("mcp", help="Run the MCP server on stdio")
    mcp_parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    mcp_parser.set_defaults(func=mcp)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
