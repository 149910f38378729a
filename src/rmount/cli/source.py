"""Data source commands: add, list, show, update, remove, test, ls."""

from __future__ import annotations

import json
from typing import Optional

import click
from rich.table import Table

from ..models import parse_config
from ._common import console, handle_errors, home_option, unlocked_app


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def register_source_commands(main: click.Group) -> None:
    """Register the source command group."""

    @main.group()
    def source():
        """Manage S3-compatible data sources in the vault.

        \b
        Add:     rmount source add minio-1 --endpoint http://localhost:9000 --access-key ...
        List:    rmount source list
        Browse:  rmount source ls minio-1 photos/
        """

    @source.command("add")
    @click.argument("name")
    @click.option("--endpoint", default=None, help="Endpoint URL; omit for AWS S3.")
    @click.option("--access-key", required=True, help="Access key id.")
    @click.option(
        "--secret-key",
        prompt=True,
        hide_input=True,
        envvar="RMOUNT_SECRET_KEY",
        help="Secret key (prompted if omitted, or RMOUNT_SECRET_KEY).",
    )
    @click.option("--region", default="", help="Region (default us-east-1).")
    @click.option("--bucket", default=None, help="Restrict to one bucket.")
    @click.option("--description", default="", help="Free-form note.")
    @click.option("--test", "run_test", is_flag=True, help="Test the connection before saving.")
    @home_option
    @handle_errors
    def source_add(name, endpoint, access_key, secret_key, region, bucket, description, run_test, home):
        """Add a data source.

        \b
        Examples:

            rmount source add minio-1 --endpoint http://localhost:9000 --access-key minio

            rmount source add aws --access-key AKIA... --bucket my-bucket --test
        """
        config = parse_config({
            "name": name,
            "endpoint": endpoint,
            "access_key": access_key,
            "secret_key": secret_key,
            "region": region,
            "bucket": bucket,
            "description": description,
        })
        app = unlocked_app(home)
        if run_test:
            console.print(f"  Testing [cyan]{name}[/]...", end=" ")
            app.test_connection(config)
            console.print("[green]ok[/]")
        stored = app.add_source(config)
        console.print(f"[green]Added[/] [cyan]{stored.name}[/] [dim]({stored.id})[/]")

    @source.command("list")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @home_option
    @handle_errors
    def source_list(as_json: bool, home: str):
        """List data sources (secrets are never shown)."""
        app = unlocked_app(home)
        sources = app.list_sources()

        if as_json:
            click.echo(json.dumps([s.model_dump(mode="json") for s in sources], indent=2))
            return
        if not sources:
            console.print("[dim]No data sources. Add one with 'rmount source add'.[/]")
            return

        active = {r.name: r.status for r in app.list_mounts()}
        table = Table()
        table.add_column("Name", style="cyan")
        table.add_column("Endpoint")
        table.add_column("Region", style="dim")
        table.add_column("Bucket")
        table.add_column("Mount", style="dim")
        for cfg in sources:
            table.add_row(
                cfg.name,
                cfg.endpoint or "AWS S3",
                cfg.region,
                cfg.bucket or "[dim]all[/]",
                active[cfg.name].value if cfg.name in active else "",
            )
        console.print(table)

    @source.command("show")
    @click.argument("name")
    @home_option
    @handle_errors
    def source_show(name: str, home: str):
        """Show one data source, secret redacted."""
        app = unlocked_app(home)
        click.echo(json.dumps(app.get_source(name).model_dump(mode="json"), indent=2))

    @source.command("update")
    @click.argument("name")
    @click.option("--rename", default=None, help="New name.")
    @click.option("--endpoint", default=None, help="Endpoint URL ('' to clear).")
    @click.option("--access-key", default=None)
    @click.option("--secret-key", default=None, help="New secret key.")
    @click.option("--prompt-secret", is_flag=True, help="Prompt for a new secret key.")
    @click.option("--region", default=None)
    @click.option("--bucket", default=None, help="Bucket ('' to clear).")
    @click.option("--description", default=None)
    @home_option
    @handle_errors
    def source_update(
        name: str,
        rename: Optional[str],
        endpoint: Optional[str],
        access_key: Optional[str],
        secret_key: Optional[str],
        prompt_secret: bool,
        region: Optional[str],
        bucket: Optional[str],
        description: Optional[str],
        home: str,
    ):
        """Change fields of a data source. Unset options keep their value.

        Fails while the source is mounted; unmount it first.
        """
        app = unlocked_app(home)
        if prompt_secret:
            secret_key = click.prompt("Secret key", hide_input=True)

        data = app.vault.get(name).to_payload()
        changes = {
            "name": rename,
            "endpoint": endpoint,
            "access_key": access_key,
            "secret_key": secret_key,
            "region": region,
            "bucket": bucket,
            "description": description,
        }
        data.update({k: v for k, v in changes.items() if v is not None})

        stored = app.update_source(name, parse_config(data))
        console.print(f"[green]Updated[/] [cyan]{stored.name}[/]")

    @source.command("remove")
    @click.argument("name")
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    @home_option
    @handle_errors
    def source_remove(name: str, yes: bool, home: str):
        """Delete a data source. Fails while it is mounted."""
        app = unlocked_app(home)
        app.vault.get(name)
        if not yes:
            click.confirm(f"Remove data source '{name}'?", abort=True)
        app.remove_source(name)
        console.print(f"[green]Removed[/] [cyan]{name}[/]")

    @source.command("test")
    @click.argument("name")
    @home_option
    @handle_errors
    def source_test(name: str, home: str):
        """Check that a stored data source is reachable."""
        app = unlocked_app(home)
        console.print(f"  Testing [cyan]{name}[/]...", end=" ")
        app.test_connection(name)
        console.print("[green]ok[/]")

    @source.command("ls")
    @click.argument("name")
    @click.argument("path", default="")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @home_option
    @handle_errors
    def source_ls(name: str, path: str, as_json: bool, home: str):
        """List files and folders of a data source without mounting it."""
        app = unlocked_app(home)
        entries = app.list_files(name, path)

        if as_json:
            click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
            return
        if not entries:
            console.print("[dim]Empty.[/]")
            return

        table = Table(box=None, padding=(0, 2))
        table.add_column("Name")
        table.add_column("Size", justify="right", style="dim")
        table.add_column("Modified", style="dim")
        table.add_column("Type", style="dim")
        for entry in sorted(entries, key=lambda e: (not e.is_dir, e.name)):
            table.add_row(
                f"[bold blue]{entry.name}/[/]" if entry.is_dir else entry.name,
                "" if entry.is_dir else _human_size(entry.size),
                entry.mod_time.strftime("%Y-%m-%d %H:%M") if entry.mod_time else "",
                entry.mime_type,
            )
        console.print(table)
