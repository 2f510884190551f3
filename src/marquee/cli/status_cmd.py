"""Server status command"""

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from marquee.types import ServerHealth, ServerStatusSummary

console = Console()

LEVEL_STYLES = {
    "normal": "green",
    "warning": "yellow",
    "error": "red",
    "unknown": "dim",
}


def get_client():
    """Create a client from the configured settings."""
    from marquee.client import MarqueeClient
    return MarqueeClient()


@click.command()
def status():
    """Probe the media server and show its reported status."""
    server, health, summary = asyncio.run(_status())

    if not server:
        console.print("[red]No server configured. Run 'marquee login --server URL' first.[/red]")
        sys.exit(1)

    if health.is_down:
        console.print(f"[red]{server} is down: {health.message}[/red]")
        sys.exit(2)

    console.print(f"[green]{server} is reachable[/green]")
    if health.message:
        console.print(f"[yellow]{health.message}[/yellow]")

    if summary is None or not summary.server_issues:
        return

    table = Table(title="Components with issues")
    table.add_column("Component", style="cyan")
    table.add_column("Level")
    table.add_column("Message")
    for component in summary.server_issues:
        style = LEVEL_STYLES.get(component.level, "")
        table.add_row(
            component.server_name,
            f"[{style}]{component.level}[/{style}]",
            component.message or component.error or ""
        )
    console.print(table)


async def _status() -> tuple[str | None, ServerHealth, ServerStatusSummary | None]:
    async with get_client() as client:
        if not client.server_url:
            return None, client.health.health, None
        health = await client.health.check()
        return client.server_url, health, client.health.last_summary
