"""Vault commands: init, unlock-check, passwd, audit."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from ..audit import read_audit_log
from ._common import console, get_password, handle_errors, home_option, open_app, unlocked_app


def register_vault_commands(main: click.Group) -> None:
    """Register vault lifecycle commands on the main group."""

    @main.command("init")
    @home_option
    @handle_errors
    def init(home: str):
        """Create an empty vault under a new master password.

        \b
        Example:

            rmount init
        """
        app = open_app(home)
        if app.is_initialized:
            console.print(f"[yellow]A vault already exists in {app.home}.[/]")
            sys.exit(1)

        password = get_password("New master password", confirm=True)
        app.initialize(password)
        console.print(f"[green]Vault created[/] [dim]{app.vault.path}[/]")
        console.print(f"  Mount point root: [cyan]{app.settings.mounts_root}[/]")

    @main.command("unlock-check")
    @home_option
    @handle_errors
    def unlock_check(home: str):
        """Verify the master password without changing anything."""
        app = unlocked_app(home)
        count = len(app.list_sources())
        console.print(f"[green]Password OK.[/] {count} data source(s) in the vault.")

    @main.command("passwd")
    @home_option
    @handle_errors
    def passwd(home: str):
        """Change the master password (re-encrypts the vault)."""
        app = open_app(home)
        if not app.is_initialized:
            console.print("[bold red]No vault found.[/] Run [cyan]rmount init[/] first.")
            sys.exit(1)
        current = get_password("Current master password")
        app.unlock(current)
        new = click.prompt("New master password", hide_input=True, confirmation_prompt=True)
        app.change_password(current, new)
        console.print("[green]Master password changed.[/]")
        console.print("[dim]Run 'rmount sync push' so other devices pick up the new key.[/]")

    @main.command("audit")
    @home_option
    @click.option("--limit", default=20, show_default=True, help="Entries to show.")
    def audit(home: str, limit: int):
        """Show recent security events (newest last)."""
        entries = read_audit_log(Path(home).expanduser(), limit=limit)
        if not entries:
            console.print("[dim]No audit entries yet.[/]")
            return

        table = Table(show_lines=False)
        table.add_column("When", style="dim")
        table.add_column("Event", style="cyan")
        table.add_column("Detail")
        for entry in entries:
            table.add_row(
                entry.timestamp[:19].replace("T", " "),
                entry.event_type,
                entry.detail,
            )
        console.print(table)
