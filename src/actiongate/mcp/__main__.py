"""
Entry point for running the ActionGate MCP server.

    python -m actiongate.mcp
    actiongate-mcp
"""

from actiongate.mcp.server import run_server


def main() -> None:
    """Run the ActionGate MCP server."""
    run_server()


if __name__ == "__main__":
    main()
