"""Typer application for the ``code-context`` command."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer

from .. import __version__
from ..config.defaults import DEFAULT_SEARCH_LIMIT
from ..config.settings import Settings, load_settings
from ..core.exceptions import CodeContextError
from ..core.factory import ComponentFactory
from ..core.manager import ProjectIndexManager, is_all_target
from ..mcp.server import run_mcp_server
from ..utils.logging import configure_logging
from .output import (
    console,
    print_error,
    print_index_result,
    print_search_results,
    print_status,
    print_success,
    print_warning,
)

T = TypeVar("T")

app = typer.Typer(
    name="code-context",
    help="Incremental semantic code search over local projects, served over MCP.",
    no_args_is_help=True,
)


def _settings(verbose: bool) -> Settings:
    try:
        settings = load_settings()
    except CodeContextError as e:
        print_error(e.message)
        raise typer.Exit(2) from e
    configure_logging("DEBUG" if verbose else settings.log_level)
    return settings


def _target(path: str) -> str:
    """Resolve CLI paths (which may be relative) to the absolute form tools expect."""
    if is_all_target(path):
        return path
    return str(Path(path).expanduser().resolve())


def _run(
    settings: Settings, operation: Callable[[ProjectIndexManager], Awaitable[T]]
) -> T:
    async def runner() -> T:
        bundle = ComponentFactory.create_components(settings)
        await bundle.manager.load()
        try:
            return await operation(bundle.manager)
        finally:
            await bundle.manager.close()

    try:
        return asyncio.run(runner())
    except CodeContextError as e:
        print_error(f"[{e.kind}] {e.message}")
        raise typer.Exit(1) from e


@app.command()
def serve(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the MCP server on stdio."""
    settings = _settings(verbose)
    asyncio.run(run_mcp_server(settings))


@app.command()
def index(
    path: str = typer.Argument(".", help="Project root to index"),
    force: bool = typer.Option(False, "--force", "-f", help="Re-embed every file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Index (or incrementally update) a project."""
    settings = _settings(verbose)
    target = _target(path)
    with console.status(f"Indexing {target}..."):
        result = _run(settings, lambda m: m.index(target, force=force))
    print_index_result(result)


@app.command()
def search(
    query: str = typer.Argument(..., help="Natural language query"),
    path: str = typer.Option(".", "--path", "-p", help="Project root, or 'all'"),
    limit: int = typer.Option(DEFAULT_SEARCH_LIMIT, "--limit", "-n", min=1),
    cross_project: bool = typer.Option(
        False, "--cross-project", help="Search every active project"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Search indexed code."""
    settings = _settings(verbose)
    target = _target(path)
    hits = _run(
        settings,
        lambda m: m.search(target, query, limit=limit, cross_project=cross_project),
    )
    print_search_results(hits)


@app.command()
def status(
    path: str = typer.Argument("all", help="Project root, or 'all'"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Show indexing status."""
    settings = _settings(verbose)
    print_status(_run(settings, lambda m: m.status(_target(path))))


@app.command()
def clear(
    path: str = typer.Argument(..., help="Project root, or 'all'"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Drop a project's index."""
    settings = _settings(verbose)
    target = _target(path)
    if not yes:
        typer.confirm(f"Clear the index for {target}?", abort=True)
    cleared = _run(settings, lambda m: m.clear(target))["cleared"]
    if not cleared:
        print_warning("No indexed projects to clear.")
    for project in cleared:
        print_success(f"Cleared index for {project}")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"code-context-mcp {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
