"""Command-line interface for Code Context MCP."""
