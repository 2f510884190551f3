"""Sign-in, sign-out and identity commands."""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from marquee import endpoints
from marquee.errors import ConfigurationError, MarqueeError
from marquee.schemas import User

logger = logging.getLogger(__name__)
console = Console()


def get_client():
    """Create a client from the configured settings."""
    from marquee.client import MarqueeClient
    return MarqueeClient()


@click.command()
@click.option('--server', '-s', default=None,
              help='Media server URL (default: SERVER_URL or the last used server)')
@click.option('--provider', '-p', default=None,
              help='Sign in through this identity provider in the browser')
@click.option('--qr', is_flag=True,
              help='Pair this device by opening a link on an already signed-in device')
def login(server: str | None, provider: str | None, qr: bool):
    """
    Sign in to a media server.

    Examples:
        marquee login --server https://cinema.example.com --provider google
        marquee login --qr
    """
    if bool(provider) == qr:
        raise click.UsageError("Specify exactly one of --provider or --qr")

    try:
        user = asyncio.run(_login(server, provider, qr))
    except MarqueeError as e:
        console.print(f"[red]Login failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Signed in as {user.name} ({user.email})[/green]")


async def _login(server: str | None, provider: str | None, qr: bool) -> User:
    async with get_client() as client:
        if server:
            if client.is_authenticated and client.server_url != server.rstrip('/'):
                await client.sign_out()
            client.set_server(server)

        if not client.server_url:
            raise ConfigurationError("No server configured. Pass --server or set SERVER_URL.")

        if provider:
            console.print(f"Opening browser to sign in with [bold]{provider}[/bold]...")
            flow = await client.sign_in_with_provider(provider)
        else:
            pairing = await client.sign_in_with_qr_code()
            url = endpoints.qr_auth_url(client.server_url, pairing.qr_session_id)
            console.print(Panel(
                f"Open this link on a signed-in device:\n[bold]{url}[/bold]",
                title="Pair this device"
            ))
            flow = await client.poll_qr_authentication(pairing.qr_session_id)

        with console.status("Waiting for authentication..."):
            bundle = await flow.wait()
        return bundle.user


@click.command()
def logout():
    """Sign out and forget the stored credentials (the server is remembered)."""
    signed_out = asyncio.run(_logout())
    if signed_out:
        console.print("[green]Signed out.[/green]")
    else:
        console.print("[yellow]Not signed in.[/yellow]")


async def _logout() -> bool:
    async with get_client() as client:
        if not client.is_authenticated:
            return False
        await client.sign_out()
        return True


@click.command()
@click.option('--check', is_flag=True, help='Verify the session with the server')
def whoami(check: bool):
    """Show the signed-in user."""
    server, user = asyncio.run(_whoami(check))

    if user is None:
        console.print("[yellow]Not signed in.[/yellow]")
        if server:
            console.print(f"Server: {server}")
        sys.exit(1)

    table = Table(title="Current user")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Server", server or "")
    table.add_row("Name", user.name)
    table.add_row("Email", user.email)
    table.add_row("Approved", "yes" if user.approved else "no")
    if user.limited_access is not None:
        table.add_row("Limited access", "yes" if user.limited_access else "no")
    if user.admin is not None:
        table.add_row("Admin", "yes" if user.admin else "no")
    console.print(table)


async def _whoami(check: bool) -> tuple[str | None, User | None]:
    async with get_client() as client:
        user = client.current_user()
        if check and user is not None:
            user = await client.refresh_user_status()
        return client.server_url, user
