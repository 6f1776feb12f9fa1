"""Tests for the MCP tool surface."""

import pytest

from code_context_mcp.core.models import IndexResult, ProjectState, ProjectStatus, SearchHit
from code_context_mcp.mcp.server import (
    CodeContextServer,
    create_mcp_server,
    render_index_result,
    render_search_results,
    render_status,
)

FILES = {
    "app/routes.py": (
        "def register_routes(app):\n"
        "    app.add_route('/health', health)\n"
        "    return app\n"
    ),
    "app/models.py": "class UserModel:\n    name = ''\n    email = ''\n",
}


def _text(result) -> str:
    assert len(result.content) == 1
    return result.content[0].text


@pytest.fixture
def server(make_manager) -> CodeContextServer:
    return CodeContextServer(make_manager())


class TestToolSchemas:
    def test_four_tools(self, server):
        tools = {tool.name: tool for tool in server.get_tools()}

        assert set(tools) == {
            "index_codebase",
            "search_code",
            "clear_index",
            "get_indexing_status",
        }
        assert tools["search_code"].inputSchema["required"] == ["path", "query"]
        assert tools["search_code"].inputSchema["properties"]["limit"]["maximum"] == 50
        assert tools["index_codebase"].inputSchema["properties"]["force"]["type"] == "boolean"

    def test_create_mcp_server(self, make_manager):
        server, handler = create_mcp_server(make_manager())
        assert server.name == "code-context-mcp"
        assert isinstance(handler, CodeContextServer)


@pytest.mark.asyncio
class TestToolCalls:
    """Dispatch and rendering through call_tool()."""

    async def test_index_search_status_clear(self, server, make_project):
        root = make_project("web", FILES)

        indexed = await server.call_tool("index_codebase", {"path": str(root)})
        assert not indexed.isError
        assert "Files indexed: 2" in _text(indexed)

        found = await server.call_tool(
            "search_code", {"path": str(root), "query": "register routes health", "limit": 1}
        )
        assert not found.isError
        text = _text(found)
        assert "1. **register_routes** (`app/routes.py:1-3`) [web]" in text
        assert "Score: " in text
        assert "2. " not in text

        status = await server.call_tool("get_indexing_status", {"path": "all"})
        assert "Indexed projects:" in _text(status)
        assert f"1. Project: {root}" in _text(status)
        assert "Status: Indexed" in _text(status)

        cleared = await server.call_tool("clear_index", {"path": str(root)})
        assert _text(cleared) == f"Cleared index for {root}"

        empty = await server.call_tool("get_indexing_status", {"path": "all"})
        assert _text(empty) == "No indexed projects found."

    async def test_clear_all_with_nothing_indexed(self, server):
        result = await server.call_tool("clear_index", {"path": "all"})

        assert not result.isError
        assert _text(result) == "No indexed projects to clear."

    async def test_float_limit_is_accepted(self, server, make_project):
        root = make_project("web", FILES)
        await server.call_tool("index_codebase", {"path": str(root)})

        result = await server.call_tool(
            "search_code", {"path": str(root), "query": "user model", "limit": 2.0}
        )

        assert not result.isError

    async def test_not_indexed_error(self, server, make_project):
        root = make_project("web", FILES)

        result = await server.call_tool("search_code", {"path": str(root), "query": "x"})

        assert result.isError
        assert _text(result).startswith("Error [not_found]: ")

    @pytest.mark.parametrize(
        "arguments",
        [
            {"query": "x"},
            {"path": 42, "query": "x"},
            {"path": "relative", "query": "x"},
            {"path": "all", "query": ""},
            {"path": "all", "query": "x", "limit": 0},
        ],
    )
    async def test_invalid_arguments(self, server, arguments):
        result = await server.call_tool("search_code", arguments)

        assert result.isError
        assert _text(result).startswith("Error [invalid_argument]: ")

    async def test_unknown_tool(self, server):
        result = await server.call_tool("drop_database", {})

        assert result.isError
        assert "Unknown tool: drop_database" in _text(result)

    async def test_unexpected_error_is_internal(self, server, monkeypatch):
        async def explode(path):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(server.manager, "status", explode)

        result = await server.call_tool("get_indexing_status", {"path": "all"})

        assert result.isError
        assert _text(result) == "Error [internal]: Tool execution failed: disk on fire"

    async def test_status_of_unknown_project(self, server, tmp_path):
        result = await server.call_tool("get_indexing_status", {"path": str(tmp_path)})

        assert not result.isError
        assert "Status: Unindexed" in _text(result)
        assert "Files:" not in _text(result)


class TestRendering:
    def test_index_result_lists_failures_and_evictions(self):
        result = IndexResult(
            project="/p",
            collection_id="code_index_x",
            files_indexed=1,
            failed_files=["a.py"],
            evicted=["/old"],
        )
        text = render_index_result(result)

        assert "Failed files (1):\n  - a.py" in text
        assert "Evicted least recently used: /old" in text

    def test_search_results_truncate_long_text(self):
        hit = SearchHit("a.py", "/p/proj", 1, 2, "x" * 600, 0.5)
        text = render_search_results([hit])

        assert "1. **chunk** (`a.py:1-2`) [proj]" in text
        assert "Score: 50.00%" in text
        assert "x" * 500 + "\n..." in text
        assert "x" * 501 not in text

    def test_no_results(self):
        assert render_search_results([]) == "No results found."

    def test_status_single_project(self):
        status = ProjectStatus("/p", ProjectState.EVICTED, "code_index_x")
        text = render_status([status], all_projects=False)

        assert text.startswith("Project: /p\nStatus: Evicted")
        assert "Files:" not in text
