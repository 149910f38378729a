"""Mount commands: mount, unmount, mounts, reconcile, watch."""

from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

import click
from rich.table import Table

from ..models import MountStatus
from ._common import console, handle_errors, home_option, logger, status_icon, unlocked_app


def register_mount_commands(main: click.Group) -> None:
    """Register mount lifecycle commands on the main group."""

    @main.command("mount")
    @click.argument("name")
    @click.option("--remote-path", default="", help="Subpath inside the source (bucket/dir).")
    @click.option("--no-wait", is_flag=True, help="Return once the mount is started.")
    @home_option
    @handle_errors
    def mount(name: str, remote_path: str, no_wait: bool, home: str):
        """Mount a data source under the mount directory.

        \b
        Examples:

            rmount mount minio-1

            rmount mount aws --remote-path my-bucket/photos
        """
        app = unlocked_app(home)
        record = app.mount(name, remote_path, wait=not no_wait)

        if record.status == MountStatus.MOUNTED:
            console.print(f"[green]Mounted[/] [cyan]{name}[/] at [white]{record.local_path}[/]")
            console.print(f"[dim]Unmount with: rmount unmount {name}[/]")
        elif record.status == MountStatus.MOUNTING:
            console.print(f"[yellow]Mounting[/] [cyan]{name}[/] at [white]{record.local_path}[/] ...")
            console.print("[dim]Check progress with: rmount mounts[/]")
        else:
            console.print(f"[bold red]Mount failed:[/] {record.error}")
            sys.exit(1)

    @main.command("unmount")
    @click.argument("name")
    @home_option
    @handle_errors
    def unmount(name: str, home: str):
        """Unmount a data source.

        Open files are flushed for the configured grace period, then
        the driver is killed.
        """
        app = unlocked_app(home)
        console.print(f"[bold cyan]Unmounting {name} ...[/]")
        app.unmount(name)
        console.print("[green]Unmounted.[/]")

    @main.command("mounts")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @home_option
    @handle_errors
    def mounts(as_json: bool, home: str):
        """Show mount records as last seen by the reconcile sweep."""
        app = unlocked_app(home)
        records = app.list_mounts()

        if as_json:
            click.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
            return
        if not records:
            console.print("[dim]Nothing mounted.[/]")
            return

        table = Table()
        table.add_column("Name", style="cyan")
        table.add_column("Status")
        table.add_column("Local path")
        table.add_column("Remote path", style="dim")
        table.add_column("PID", style="dim")
        for rec in records:
            table.add_row(
                rec.name,
                status_icon(rec.status),
                rec.local_path,
                rec.remote_path or "/",
                str(rec.pid) if rec.pid else "",
            )
        console.print(table)
        for rec in records:
            if rec.error:
                console.print(f"  [red]{rec.name}:[/] {rec.error}")

    @main.command("reconcile")
    @home_option
    @handle_errors
    def reconcile(home: str):
        """Compare mount records with running processes and fix them."""
        app = unlocked_app(home)
        changed = app.reconcile()
        if not changed:
            console.print("[green]All mount records match reality.[/]")
            return
        for rec in changed:
            console.print(f"  [cyan]{rec.name}[/] -> {status_icon(rec.status)} {rec.error or ''}")

    @main.command("watch")
    @click.option("--remount", is_flag=True, help="Remount sources left in error (e.g. after reboot).")
    @click.option("--unmount-on-exit", is_flag=True, help="Unmount everything when stopped.")
    @home_option
    @handle_errors
    def watch(remount: bool, unmount_on_exit: bool, home: str):
        """Run the reconcile sweep in the foreground until interrupted.

        This is what the auto-start login item runs. Set RMOUNT_PASSWORD
        in its environment so it can unlock the vault unattended.
        """
        home_path = Path(home).expanduser()
        app = unlocked_app(home)

        app.reconcile()
        if remount:
            for rec in app.remount_failed():
                console.print(f"[yellow]Remounting[/] [cyan]{rec.name}[/]")

        stop = threading.Event()

        def handle_signal(signum, frame):
            logger.info("Received signal %s, stopping", signal.Signals(signum).name)
            stop.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, handle_signal)

        app.start_monitor()
        console.print(
            f"[bold cyan]Watching mounts[/] [dim](home {home_path}, every "
            f"{app.settings.reconcile_interval:g}s; Ctrl-C to stop)[/]"
        )
        while not stop.wait(1.0):
            pass
        app.close(unmount_all=unmount_on_exit)
        console.print("[green]Stopped.[/]")
