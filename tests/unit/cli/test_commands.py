"""Tests for the code-context CLI."""

import pytest
from typer.testing import CliRunner

from code_context_mcp import __version__
from code_context_mcp.cli.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def memory_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("CODE_CONTEXT_VECTOR_STORE", "memory")
    monkeypatch.setenv("CODE_CONTEXT_SNAPSHOT_DIR", str(tmp_path / "snapshots"))
    monkeypatch.setenv("CODE_CONTEXT_LANCEDB_PATH", str(tmp_path / "lance"))


class TestCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_status_with_nothing_indexed(self):
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "No indexed projects found." in result.output

    def test_status_of_unknown_project(self, tmp_path):
        result = runner.invoke(app, ["status", str(tmp_path)])

        assert result.exit_code == 0
        assert "Indexing status" in result.output

    def test_search_unindexed_project_fails(self, tmp_path):
        result = runner.invoke(app, ["search", "anything", "--path", str(tmp_path)])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_clear_unknown_project_fails(self, tmp_path):
        result = runner.invoke(app, ["clear", str(tmp_path), "--yes"])

        assert result.exit_code == 1

    def test_clear_all_with_nothing_indexed(self):
        result = runner.invoke(app, ["clear", "all", "--yes"])

        assert result.exit_code == 0
        assert "No indexed projects to clear." in result.output

    def test_clear_asks_for_confirmation(self, tmp_path):
        result = runner.invoke(app, ["clear", str(tmp_path)], input="n\n")

        assert result.exit_code == 1
        assert "Abort" in result.output

    def test_invalid_configuration(self, monkeypatch):
        monkeypatch.setenv("CODE_CONTEXT_MAX_PROJECTS", "0")

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
