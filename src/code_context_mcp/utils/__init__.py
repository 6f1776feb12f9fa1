"""Utility helpers for Code Context MCP."""
