"""Command Line Interface (CLI) output and prompts, rendered with rich."""

from typing import Callable, List, Optional, Sequence, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.prompt import IntPrompt
from rich.table import Table
from rich.text import Text

from core.models import BatchManifest, IngestReport, RowOutcome, Status
from utils.logger import get_logger
from utils.error_handler import UserCancelledError

logger = get_logger()
console = Console()

T = TypeVar('T')  # Generic type for selection items

STATUS_STYLES = {
    Status.NEW: "white",
    Status.GEMINI_QUEUED: "cyan",
    Status.GEMINI_DONE: "blue",
    Status.JUDGE_SUBMITTED: "magenta",
    Status.VERDICT_READY: "green",
    Status.CANNOT_PROCESS: "red",
}


def display_welcome():
    """Displays a welcome message."""
    console.print(Panel(
        "[bold green]Flowchart Judge[/bold green]",
        title="Welcome",
        border_style="blue"
    ))
    console.print("Turns hand-drawn flowcharts into code with Gemini and grades it on DOMjudge.")
    console.rule()


def display_farewell():
    console.rule()
    console.print("[bold cyan]Done. Exiting.[/bold cyan]")


def display_error(message: str):
    """Displays an error message in a standard format."""
    console.print(Panel(f"[bold red]Error:[/bold red] {message}", title="Error", border_style="red"))


def display_warning(message: str):
    console.print(f"[yellow]Warning:[/yellow] {message}")


def display_success(message: str):
    console.print(f"[green]Success:[/green] {message}")


def prompt_for_selection(items: Sequence[T], display_func: Callable[[T], str], prompt_message: str) -> Optional[T]:
    """Prompts the user to select an item from a list.

    Returns:
        The selected item, or None if no items are available.

    Raises:
        UserCancelledError: If the user enters 0.
    """
    if not items:
        console.print("[yellow]No items available for selection.[/yellow]")
        return None

    console.print(prompt_message)
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("Action", style="cyan")
    choices = []
    for i, item in enumerate(items):
        table.add_row(str(i + 1), display_func(item))
        choices.append(str(i + 1))
    console.print(table)
    console.print("Enter 0 to exit.")

    choice = IntPrompt.ask("Select item number", choices=choices + ["0"])
    if choice == 0:
        raise UserCancelledError("User cancelled selection.")
    return items[choice - 1]


def _status_text(status: Optional[Status]) -> Text:
    if status is None:
        return Text("-", style="dim")
    return Text(status.value, style=STATUS_STYLES.get(status, "white"))


def display_row_outcomes(title: str, outcomes: List[RowOutcome]):
    """Displays what a trigger did to each row it touched."""
    if not outcomes:
        console.print(f"[yellow]{title}: no eligible rows.[/yellow]")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Row", style="dim", justify="right")
    table.add_column("Email", style="cyan")
    table.add_column("Problem")
    table.add_column("Before")
    table.add_column("After")
    table.add_column("Error", style="red")

    advanced = 0
    for outcome in outcomes:
        if outcome.advanced:
            advanced += 1
        table.add_row(
            str(outcome.row_number),
            outcome.email or "N/A",
            outcome.problem or "N/A",
            _status_text(outcome.before),
            _status_text(outcome.after),
            Text(outcome.error, style="yellow") if outcome.error else Text("None", style="dim green"),
        )
    console.print(table)
    failed = sum(1 for o in outcomes if o.error)
    console.print(f"Summary: {advanced} advanced, {failed} failed, {len(outcomes) - advanced - failed} unchanged.")


def display_ingest_reports(reports: List[IngestReport]):
    if not reports:
        console.print("[yellow]No finished batches to ingest.[/yellow]")
        return
    table = Table(title="Gemini Batch Ingestion", show_header=True, header_style="bold magenta")
    table.add_column("Batch", style="cyan")
    table.add_column("OK", style="green", justify="right")
    table.add_column("Errors", style="red", justify="right")
    table.add_column("Skipped", style="yellow", justify="right")
    table.add_column("Unknown", style="dim", justify="right")
    for report in reports:
        table.add_row(report.batch_name or "N/A", str(report.ok), str(report.err),
                      str(report.skipped), str(report.unknown))
    console.print(table)


def display_manifest(manifest: Optional[BatchManifest]):
    if manifest is None:
        console.print("[yellow]No NEW rows with a loadable flowchart; nothing was queued.[/yellow]")
        return
    display_success(f"Batch {manifest.batch_name} created with {len(manifest.rows)} row(s).")
    for row in manifest.rows:
        console.print(f"  {row.key}: {row.email} {row.problem}", style="dim")
