"""MCP server implementation for Code Context MCP."""

from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from .. import __version__
from ..config.defaults import DEFAULT_SEARCH_LIMIT
from ..config.settings import Settings
from ..core.exceptions import CodeContextError, InvalidArgumentError
from ..core.factory import ComponentFactory
from ..core.manager import ProjectIndexManager, is_all_target
from ..core.models import IndexResult, ProjectState, ProjectStatus, SearchHit
from .tool_schemas import get_tool_schemas

# Characters of chunk text shown per search hit
MAX_RESULT_TEXT = 500


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).isoformat(timespec="seconds")


def _truncate(text: str, max_len: int = MAX_RESULT_TEXT) -> str:
    return text if len(text) <= max_len else text[:max_len] + "\n..."


def render_index_result(result: IndexResult) -> str:
    lines = [
        f"Indexed {result.project}",
        f"Collection: {result.collection_id}",
        f"Files indexed: {result.files_indexed}",
        f"Files removed: {result.files_removed}",
        f"Files unchanged: {result.files_unchanged}",
        f"Total chunks: {result.chunk_count}",
    ]
    if result.failed_files:
        lines.append(f"Failed files ({len(result.failed_files)}):")
        lines.extend(f"  - {path}" for path in result.failed_files)
    if result.evicted:
        lines.append(f"Evicted least recently used: {', '.join(result.evicted)}")
    return "\n".join(lines)


def render_search_results(hits: list[SearchHit]) -> str:
    if not hits:
        return "No results found."

    parts = ["Search results:\n"]
    for i, hit in enumerate(hits, 1):
        title = hit.symbol_name or hit.symbol_kind or "chunk"
        project = Path(hit.project).name
        parts.append(
            f"{i}. **{title}** (`{hit.file}:{hit.start_line}-{hit.end_line}`) "
            f"[{project}]\n"
            f"Score: {hit.score * 100:.2f}%\n"
            f"```\n{_truncate(hit.text)}\n```\n"
        )
    return "\n".join(parts)


def render_status(statuses: list[ProjectStatus], all_projects: bool) -> str:
    if not statuses:
        return "No indexed projects found."

    blocks = []
    for i, status in enumerate(statuses, 1):
        prefix = f"{i}. " if all_projects else ""
        block = [
            f"{prefix}Project: {status.project}",
            f"Status: {status.state.value.capitalize()}",
            f"Collection: {status.collection_id}",
        ]
        if status.state in (ProjectState.INDEXED, ProjectState.INDEXING):
            block += [
                f"Files: {status.file_count}",
                f"Chunks: {status.chunk_count}",
                f"Last indexed: {_format_time(status.last_indexed_time)}",
                f"Last accessed: {_format_time(status.last_accessed_time)}",
            ]
        blocks.append("\n".join(block))
    header = "Indexed projects:\n\n" if all_projects else ""
    return header + "\n\n".join(blocks)


def _require_str(args: dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str):
        raise InvalidArgumentError(f"Missing '{name}' argument")
    return value


def _int_arg(args: dict[str, Any], name: str, default: int) -> Any:
    value = args.get(name, default)
    # JSON clients may send 10.0 for 10
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class CodeContextServer:
    """Decodes tool arguments, calls the manager and renders the outcome."""

    def __init__(self, manager: ProjectIndexManager) -> None:
        self.manager = manager
        self._initialized = False

    async def initialize(self) -> None:
        """Load persisted snapshots before the first request."""
        if self._initialized:
            return
        await self.manager.load()
        self._initialized = True

    async def cleanup(self) -> None:
        await self.manager.close()

    def get_tools(self) -> list[Tool]:
        return get_tool_schemas(self.manager.max_query_limit)

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None
    ) -> CallToolResult:
        """Handle a tool call; failures come back as error results."""
        if not self._initialized:
            await self.initialize()

        args = arguments or {}
        try:
            if name == "index_codebase":
                text = await self._index_codebase(args)
            elif name == "search_code":
                text = await self._search_code(args)
            elif name == "clear_index":
                text = await self._clear_index(args)
            elif name == "get_indexing_status":
                text = await self._get_indexing_status(args)
            else:
                return self._error("invalid_argument", f"Unknown tool: {name}")
        except CodeContextError as e:
            logger.warning(f"{name} failed: [{e.kind}] {e.message}")
            return self._error(e.kind, e.message)
        except Exception as e:
            logger.exception(f"{name} failed unexpectedly")
            return self._error("internal", f"Tool execution failed: {e}")

        return CallToolResult(content=[TextContent(type="text", text=text)])

    @staticmethod
    def _error(kind: str, message: str) -> CallToolResult:
        return CallToolResult(
            content=[TextContent(type="text", text=f"Error [{kind}]: {message}")],
            isError=True,
        )

    async def _index_codebase(self, args: dict[str, Any]) -> str:
        result = await self.manager.index(
            _require_str(args, "path"), force=bool(args.get("force", False))
        )
        return render_index_result(result)

    async def _search_code(self, args: dict[str, Any]) -> str:
        hits = await self.manager.search(
            _require_str(args, "path"),
            _require_str(args, "query"),
            limit=_int_arg(args, "limit", DEFAULT_SEARCH_LIMIT),
            cross_project=bool(args.get("cross_project", False)),
        )
        return render_search_results(hits)

    async def _clear_index(self, args: dict[str, Any]) -> str:
        cleared = (await self.manager.clear(_require_str(args, "path")))["cleared"]
        if not cleared:
            return "No indexed projects to clear."
        if len(cleared) == 1:
            return f"Cleared index for {cleared[0]}"
        return f"Cleared {len(cleared)} projects: {', '.join(cleared)}"

    async def _get_indexing_status(self, args: dict[str, Any]) -> str:
        path = _require_str(args, "path")
        statuses = await self.manager.status(path)
        return render_status(statuses, all_projects=is_all_target(path))


def create_mcp_server(manager: ProjectIndexManager) -> tuple[Server, CodeContextServer]:
    """Create and configure the MCP server."""
    server = Server("code-context-mcp", version=__version__)
    handler = CodeContextServer(manager)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return handler.get_tools()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
        """Handle tool calls."""
        return await handler.call_tool(name, arguments)

    return server, handler


async def run_mcp_server(settings: Settings) -> None:
    """Run the MCP server using stdio transport."""
    bundle = ComponentFactory.create_components(settings)
    server, handler = create_mcp_server(bundle.manager)
    await handler.initialize()

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream, write_stream, server.create_initialization_options()
            )
    finally:
        await handler.cleanup()
