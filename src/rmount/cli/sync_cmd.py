"""Sync commands: push, pull, status, setup."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..sync.models import BlobBackendType
from ._common import console, handle_errors, home_option, open_app, unlocked_app


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Back up the encrypted vault to a gist or a folder.

        The vault travels encrypted under your master password. The last
        push wins: a pull replaces every local change made since.
        """

    @sync.command("setup")
    @click.option(
        "--backend",
        type=click.Choice([b.value for b in BlobBackendType]),
        default=BlobBackendType.GIST.value,
        show_default=True,
    )
    @click.option("--gist-id", default=None, help="Existing gist to sync with.")
    @click.option("--token-env", default=None, help="Environment variable holding the GitHub token.")
    @click.option("--path", "local_path", default=None, type=click.Path(), help="Folder for the local backend.")
    @home_option
    @handle_errors
    def sync_setup(backend: str, gist_id: Optional[str], token_env: Optional[str], local_path: Optional[str], home: str):
        """Choose where the vault is backed up.

        \b
        Examples:

            rmount sync setup --backend gist

            rmount sync setup --backend gist --gist-id 1a2b3c...

            rmount sync setup --backend local --path /media/usb/rmount
        """
        app = open_app(home)
        cfg = app.settings.sync
        cfg.backend = BlobBackendType(backend)
        if gist_id is not None:
            cfg.gist_id = gist_id or None
        if token_env:
            cfg.token_env_var = token_env
        if local_path is not None:
            cfg.local_path = Path(local_path).expanduser()
        app.save_settings()

        console.print(f"[green]Sync backend set to[/] [cyan]{cfg.backend.value}[/]")
        if cfg.backend == BlobBackendType.GIST:
            console.print(f"  [dim]Token is read from ${cfg.token_env_var}[/]")

    @sync.command("push")
    @home_option
    @handle_errors
    def sync_push(home: str):
        """Upload the encrypted vault."""
        app = unlocked_app(home)
        console.print(f"\n  Pushing vault to [cyan]{app.sync.store.name}[/]...", end=" ")
        revision = app.push()
        console.print("[green]done[/]")
        console.print(f"  [dim]Revision: {revision}[/]\n")

    @sync.command("pull")
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    @home_option
    @handle_errors
    def sync_pull(yes: bool, home: str):
        """Replace the local vault with the remote copy."""
        app = unlocked_app(home)
        if not yes:
            click.confirm(
                "Local data source changes since the last push will be lost. Continue?",
                abort=True,
            )
        console.print(f"\n  Pulling vault from [cyan]{app.sync.store.name}[/]...", end=" ")
        if app.pull():
            console.print("[green]done[/]")
            console.print(f"  [dim]{len(app.list_sources())} data source(s) now in the vault.[/]\n")
        else:
            console.print("[yellow]already up to date[/]\n")

    @sync.command("status")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @home_option
    @handle_errors
    def sync_status(as_json: bool, home: str):
        """Show the sync backend and recent activity."""
        app = unlocked_app(home)
        status = app.sync_status()

        if as_json:
            click.echo(json.dumps(status, indent=2))
            return

        state = status["state"]
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="dim")
        table.add_column("Value")
        table.add_row("Backend", status["target"])
        table.add_row(
            "Available",
            "[green]yes[/]" if status["available"] else "[red]no[/]",
        )
        table.add_row("Revision", state.get("last_revision") or "[dim]-[/]")
        table.add_row("Last push", state.get("last_push") or "[dim]never[/]")
        table.add_row("Last pull", state.get("last_pull") or "[dim]never[/]")
        table.add_row("Pushes / pulls", f"{state['push_count']} / {state['pull_count']}")
        if state.get("last_error"):
            table.add_row("Last error", f"[red]{state['last_error']}[/]")

        console.print()
        console.print(Panel(table, title="[bold]Vault Sync[/]", border_style="cyan"))
        console.print()
