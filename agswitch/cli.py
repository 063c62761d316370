"""
CLI for agswitch.

Manage stored Google accounts and switch the Antigravity IDE between
them from the terminal, or serve the local API for the desktop shell.
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from agswitch import __version__
from agswitch.config import Settings
from agswitch.service import AccountService

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_service() -> AccountService:
    """Build the service from the environment, exiting on bad configuration."""
    try:
        settings = Settings.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    return AccountService(settings)


def _fail(message: Optional[str]):
    console.print(f"[red]Error:[/red] {message or 'unknown error'}")
    sys.exit(1)


def _format_ms(ts: Optional[int]) -> str:
    """Local time for an epoch-millisecond timestamp.

    >>> _format_ms(None)
    '-'
    """
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts / 1000).strftime("%Y-%m-%d %H:%M")


def _quota_summary(quota) -> str:
    if quota is None:
        return "[dim]unavailable[/dim]"
    if not quota.models:
        return "[dim]no models[/dim]"
    parts = []
    for m in quota.models:
        color = "green" if m.percentage > 50 else "yellow" if m.percentage > 20 else "red"
        parts.append(f"{m.display_name} [{color}]{m.percentage}%[/{color}]")
    return ", ".join(parts)


@click.group()
@click.version_option(__version__, prog_name="agswitch")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose: bool):
    """agswitch - switch Antigravity between Google accounts."""
    setup_logging(verbose)


@main.command("list")
@click.option("--no-quota", is_flag=True, help="Skip the live quota lookup")
def list_accounts(no_quota: bool):
    """List stored accounts."""
    service = get_service()
    if no_quota:
        accounts = [
            (a.id, a.email, a.display_name, a.is_active, None, a.last_switched)
            for a in service.store.load()
        ]
    else:
        with console.status("Fetching quota..."):
            result = asyncio.run(service.list_accounts_with_quota())
        by_id = {a.id: a for a in service.store.load()}
        accounts = [
            (
                a.id,
                a.email,
                a.name,
                a.is_active,
                a.quota,
                by_id[a.id].last_switched if a.id in by_id else None,
            )
            for a in result.accounts
        ]

    if not accounts:
        console.print("[yellow]No accounts stored.[/yellow] Add one with 'agswitch login'.")
        return

    table = Table(title="Accounts", show_header=True)
    table.add_column("", width=1)
    table.add_column("ID", style="dim", width=8)
    table.add_column("Email", style="cyan")
    table.add_column("Name")
    table.add_column("Last switched", style="green")
    if not no_quota:
        table.add_column("Quota")

    for account_id, email, name, is_active, quota, last_switched in accounts:
        row = [
            "[green]*[/green]" if is_active else "",
            account_id[:8],
            email,
            name,
            _format_ms(last_switched),
        ]
        if not no_quota:
            row.append(_quota_summary(quota))
        table.add_row(*row)

    console.print(table)


def _resolve_account_id(service: AccountService, ref: str) -> str:
    """Accept a full id, an id prefix, or an email."""
    accounts = service.store.load()
    for a in accounts:
        if a.id == ref or a.email == ref:
            return a.id
    matches = [a for a in accounts if a.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0].id
    return ref


@main.command()
@click.argument("email")
@click.option("--refresh-token", "-t", prompt=True, hide_input=True, help="Google refresh token")
@click.option("--name", "-n", help="Display name (defaults to the email's local part)")
def add(email: str, refresh_token: str, name: Optional[str]):
    """Add an account from an existing refresh token."""
    service = get_service()
    result = asyncio.run(service.add_account(email, refresh_token, name))
    if not result.success:
        _fail(result.error)
    console.print(f"[green][OK][/green] Added {result.account.email}")


@main.command()
@click.argument("account")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def delete(account: str, yes: bool):
    """Delete an account by id, id prefix, or email."""
    service = get_service()
    account_id = _resolve_account_id(service, account)
    if not yes:
        click.confirm(f"Delete account {account}?", abort=True)
    result = service.delete_account(account_id)
    if not result.success:
        _fail(result.error)
    console.print(f"[green][OK][/green] Deleted {account}")


@main.command()
@click.argument("account")
def switch(account: str):
    """Switch Antigravity to ACCOUNT (id, id prefix, or email).

    Antigravity is closed, its login state rewritten, and relaunched.
    """
    service = get_service()
    account_id = _resolve_account_id(service, account)
    with console.status("Switching..."):
        result = asyncio.run(service.switch_account(account_id))
    if result.partial:
        console.print(f"[yellow][PARTIAL][/yellow] {result.error}")
        console.print("Antigravity was restarted with its previous login.")
        sys.exit(2)
    if not result.success:
        _fail(result.error)
    console.print(f"[green][OK][/green] Switched to {result.email}")


@main.command()
def active():
    """Show the active account."""
    account = get_service().get_active_account().account
    if account is None:
        console.print("[yellow]No active account[/yellow]")
        return
    console.print(f"{account.email} [dim]({account.id})[/dim]")


@main.command()
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to file instead of stdout")
def export(output: Optional[str]):
    """Export all accounts as JSON. The output contains refresh tokens."""
    data = get_service().export_accounts().json_data or "[]"
    if output:
        Path(output).write_text(data, encoding="utf-8")
        console.print(f"[green][OK][/green] Exported to {output}")
    else:
        click.echo(data)


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def import_(path: str):
    """Import accounts from a JSON export, merging by email."""
    result = get_service().import_accounts(Path(path).read_text(encoding="utf-8"))
    if not result.success:
        _fail(result.error)
    console.print(
        f"[green][OK][/green] Imported: {result.added} added, {result.updated} updated"
    )


@main.command()
@click.option("--no-browser", is_flag=True, help="Print the URL instead of opening a browser")
def login(no_browser: bool):
    """Add an account through the Google sign-in page."""
    service = get_service()

    async def _login():
        started = await service.start_oauth_flow(open_browser=not no_browser)
        if not started.success:
            return started.error, None
        console.print("Complete sign-in in your browser:")
        console.print(f"  {started.auth_url}")
        with console.status("Waiting for the OAuth redirect..."):
            return None, await service.wait_for_flow(started.flow_id)

    error, status = asyncio.run(_login())
    if error:
        _fail(error)
    if status["status"] != "completed":
        _fail(status.get("error") or status["status"])
    console.print(f"[green][OK][/green] Signed in as {status['email']}")


@main.command()
@click.argument("account")
def quota(account: str):
    """Refresh and show quota for one account."""
    service = get_service()
    account_id = _resolve_account_id(service, account)
    result = asyncio.run(service.refresh_quota(account_id))
    if result.quota is None:
        console.print(f"[yellow]Quota unavailable[/yellow] {result.error or ''}".rstrip())
        return

    table = Table(title="Quota", show_header=True)
    table.add_column("Model", style="cyan")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets", style="dim")
    for m in result.quota.models:
        table.add_row(m.display_name, f"{m.percentage}%", m.reset_time or "-")
    console.print(table)


@main.command()
@click.option("--host", help="Bind address (default AGSWITCH_HOST or 127.0.0.1)")
@click.option("--port", "-p", type=int, help="Port (default AGSWITCH_PORT or 8322)")
def serve(host: Optional[str], port: Optional[int]):
    """Serve the local API used by the desktop shell."""
    import uvicorn

    from agswitch.api.main import create_app

    service = get_service()
    updates = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    if updates:
        service.settings = service.settings.model_copy(update=updates)

    console.print(
        f"Serving on [bold]http://{service.settings.host}:{service.settings.port}[/bold]"
    )
    uvicorn.run(
        create_app(service),
        host=service.settings.host,
        port=service.settings.port,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
