"""Auto-start commands: on, off, status."""

from __future__ import annotations

import click

from ._common import console, handle_errors, home_option, open_app


def register_autostart_commands(main: click.Group) -> None:
    """Register the autostart command group."""

    @main.group()
    def autostart():
        """Start 'rmount watch --remount' at login."""

    @autostart.command("on")
    @home_option
    @handle_errors
    def autostart_on(home: str):
        """Install and enable the login item."""
        app = open_app(home)
        app.set_auto_start(True)
        console.print(f"[green]Auto-start enabled[/] [dim]{app.autostart.path}[/]")
        console.print("[dim]Set RMOUNT_PASSWORD for the service to unlock unattended.[/]")

    @autostart.command("off")
    @home_option
    @handle_errors
    def autostart_off(home: str):
        """Disable and remove the login item."""
        app = open_app(home)
        app.set_auto_start(False)
        console.print("[green]Auto-start disabled.[/]")

    @autostart.command("status")
    @home_option
    @handle_errors
    def autostart_status(home: str):
        """Show whether the login item is active."""
        app = open_app(home)
        if app.get_auto_start():
            console.print(f"[bold green]ENABLED[/] [dim]{app.autostart.path}[/]")
        else:
            console.print("[dim]DISABLED[/]")
