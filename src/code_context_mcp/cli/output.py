"""Rich output helpers for the CLI."""

from datetime import datetime

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from ..core.models import IndexResult, ProjectStatus, SearchHit

console = Console()


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {escape(message)}")


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def print_index_result(result: IndexResult) -> None:
    table = Table(title=f"Indexed {result.project}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Collection", result.collection_id)
    table.add_row("Files indexed", str(result.files_indexed))
    table.add_row("Files removed", str(result.files_removed))
    table.add_row("Files unchanged", str(result.files_unchanged))
    table.add_row("Total chunks", str(result.chunk_count))
    console.print(table)

    for path in result.failed_files:
        print_warning(f"Failed to index {path}")
    for project in result.evicted:
        print_warning(f"Evicted least recently used project {project}")


def print_search_results(hits: list[SearchHit]) -> None:
    if not hits:
        console.print("[dim]No results found.[/dim]")
        return

    for i, hit in enumerate(hits, 1):
        title = f"{i}. {escape(hit.file)}:{hit.start_line}-{hit.end_line}"
        if hit.symbol_name:
            title += f"  [bold]{escape(hit.symbol_name)}[/bold]"
        subtitle = f"{hit.score * 100:.1f}% · {escape(hit.project)}"
        code = Syntax(
            hit.text,
            "text",
            line_numbers=True,
            start_line=max(hit.start_line, 1),
            word_wrap=True,
        )
        console.print(Panel(code, title=title, subtitle=subtitle, title_align="left"))


def print_status(statuses: list[ProjectStatus]) -> None:
    if not statuses:
        console.print("[dim]No indexed projects found.[/dim]")
        return

    table = Table(title="Indexing status")
    table.add_column("Project", style="cyan")
    table.add_column("State")
    table.add_column("Files", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Last indexed")
    table.add_column("Last accessed")
    for status in statuses:
        table.add_row(
            status.project,
            status.state.value,
            str(status.file_count),
            str(status.chunk_count),
            _format_time(status.last_indexed_time),
            _format_time(status.last_accessed_time),
        )
    console.print(table)
