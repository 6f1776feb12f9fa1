"""MCP front end for Code Context MCP."""
