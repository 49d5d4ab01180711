"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATE_STYLES = {
    "queued": "yellow",
    "active": "cyan",
    "completed": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a panel describing a job status record"""
    state = job.get("state", "unknown")
    style = STATE_STYLES.get(state, "white")

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")

    table.add_row("Job ID", job.get("jobId", ""))
    table.add_row("State", f"[{style}]{state}[/{style}]")
    table.add_row("Attempts", str(job.get("attempts", 0)))
    for label, key in (
        ("Submitted", "submittedAt"),
        ("Started", "startedAt"),
        ("Finished", "completedAt"),
    ):
        if job.get(key):
            table.add_row(label, job[key])

    result = job.get("result")
    if result:
        table.add_row("Primes found", str(result.get("count", "?")))
        if "durationMs" in result:
            table.add_row("Duration", f"{result['durationMs']} ms")

    if job.get("error"):
        table.add_row("Error", f"[red]{job['error']}[/red]")

    return Panel(table, title="Job Status", border_style=style)
