"""MCP tool schema definitions for code indexing and search."""

from mcp.types import Tool

from ..config.defaults import DEFAULT_SEARCH_LIMIT, MAX_QUERY_LIMIT


def get_tool_schemas(max_query_limit: int = MAX_QUERY_LIMIT) -> list[Tool]:
    """Get all MCP tool schema definitions.

    Returns:
        List of Tool objects defining available MCP tools
    """
    return [
        _get_index_codebase_schema(),
        _get_search_code_schema(max_query_limit),
        _get_clear_index_schema(),
        _get_indexing_status_schema(),
    ]


def _get_index_codebase_schema() -> Tool:
    """Get index_codebase tool schema."""
    return Tool(
        name="index_codebase",
        description=(
            "Index a codebase directory to enable semantic search. Only files "
            "changed since the last run are re-embedded. Provide an absolute "
            "path. If the path is already indexed, confirm with the user before "
            "passing force=true, which re-embeds every file."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "ABSOLUTE path to the codebase directory to index.",
                },
                "force": {
                    "type": "boolean",
                    "description": "Re-embed every file even if unchanged",
                    "default": False,
                },
            },
            "required": ["path"],
        },
    )


def _get_search_code_schema(max_query_limit: int) -> Tool:
    """Get search_code tool schema."""
    return Tool(
        name="search_code",
        description=(
            "Search indexed code using natural language queries. Provide the "
            "absolute path of an indexed codebase, or 'all' to search every "
            "indexed project. Returns an error if the codebase is not indexed."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "ABSOLUTE path to the codebase to search in, or 'all'.",
                },
                "query": {
                    "type": "string",
                    "description": "Natural language query to search for in the codebase",
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of results to return",
                    "default": DEFAULT_SEARCH_LIMIT,
                    "minimum": 1,
                    "maximum": max_query_limit,
                },
                "cross_project": {
                    "type": "boolean",
                    "description": "Search every indexed project and merge the results",
                    "default": False,
                },
            },
            "required": ["path", "query"],
        },
    )


def _get_clear_index_schema() -> Tool:
    """Get clear_index tool schema."""
    return Tool(
        name="clear_index",
        description="Clear the search index for a codebase, or 'all' to clear every index.",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "ABSOLUTE path to the codebase directory to clear, or 'all'.",
                },
            },
            "required": ["path"],
        },
    )


def _get_indexing_status_schema() -> Tool:
    """Get get_indexing_status tool schema."""
    return Tool(
        name="get_indexing_status",
        description=(
            "Get the indexing status of a codebase, or of every active project "
            "with 'all'."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "ABSOLUTE path to the codebase directory, or 'all'.",
                },
            },
            "required": ["path"],
        },
    )
