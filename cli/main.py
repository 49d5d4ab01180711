"""Offload CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.base import OffloadError
from .client.endpoints import OffloadClient
from .commands import config, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="offload",
    help="⚙️ Offload - background job CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check system status and connectivity"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with OffloadClient(base_url) as client:
            health = client.health_check()
    except OffloadError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the Offload API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can update the API URL with:\n"
            f"[cyan]offload config set api.base_url <url>[/cyan]",
            title="Connection Error",
            border_style="red"
        ))
        raise typer.Exit(1) from None

    broker = health.get("broker", {})
    store = health.get("status_store", {})
    healthy = health.get("ok", False)

    console.print(Panel(
        f"{'🚀 [green]Connected Successfully![/green]' if healthy else '⚠️ [yellow]Degraded[/yellow]'}\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Broker: {_up_down(broker.get('connected'))} ({broker.get('queue', '?')})\n"
        f"• Status store: {_up_down(store.get('connected'))}\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="System Status",
        border_style="green" if healthy else "yellow"
    ))
    if not healthy:
        raise typer.Exit(1)


def _up_down(connected: bool | None) -> str:
    return "[green]up[/green]" if connected else "[red]down[/red]"


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"⚙️ [bold cyan]Offload CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


if __name__ == "__main__":
    app()
