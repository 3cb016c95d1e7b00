"""Read-only MCP server for the protected action gate."""
