"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the ``--home`` option, password
handling, and the error-to-exit-code mapping used by every command.
"""

from __future__ import annotations

import functools
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import RMOUNT_HOME
from ..app import RMountApp
from ..errors import (
    AuthError,
    ConflictError,
    CorruptState,
    DriverError,
    NotFoundError,
    RMountError,
    TransportError,
    ValidationError,
)
from ..models import MountStatus

console = Console()
logger = logging.getLogger("rmount.cli")

PASSWORD_ENV = "RMOUNT_PASSWORD"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    """Configure the root logger once per process."""
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


home_option = click.option(
    "--home",
    default=RMOUNT_HOME,
    type=click.Path(),
    help="rmount home directory.",
    show_default=True,
)


def status_icon(status: MountStatus) -> str:
    """Map mount status to a Rich-formatted indicator."""
    return {
        MountStatus.MOUNTED: "[bold green]MOUNTED[/]",
        MountStatus.MOUNTING: "[bold yellow]MOUNTING[/]",
        MountStatus.UNMOUNTING: "[bold yellow]UNMOUNTING[/]",
        MountStatus.ERROR: "[bold red]ERROR[/]",
    }.get(status, "[dim]UNMOUNTED[/]")


def get_password(prompt: str = "Master password", confirm: bool = False) -> str:
    """Master password from ``RMOUNT_PASSWORD`` or a hidden prompt."""
    env = os.environ.get(PASSWORD_ENV)
    if env:
        return env
    return click.prompt(prompt, hide_input=True, confirmation_prompt=confirm)


def open_app(home: str) -> RMountApp:
    """App for ``home`` with the vault still locked."""
    return RMountApp(home=Path(home).expanduser())


def unlocked_app(home: str) -> RMountApp:
    """App for ``home`` with the vault unlocked.

    Exits with a hint if no vault exists yet.
    """
    app = open_app(home)
    if not app.is_initialized:
        console.print("[bold red]No vault found.[/] Run [cyan]rmount init[/] first.")
        sys.exit(1)
    app.unlock(get_password())
    return app


def handle_errors(func):
    """Turn rmount errors into a red message and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AuthError as exc:
            console.print(f"[bold red]Authentication failed:[/] {exc}")
        except CorruptState as exc:
            console.print(f"[bold red]Corrupt state:[/] {exc}")
            console.print("[dim]Re-entering the password will not help; inspect the file.[/]")
        except ValidationError as exc:
            console.print(f"[bold red]Invalid input:[/] {exc}")
        except NotFoundError as exc:
            console.print(f"[bold red]Not found:[/] {exc}")
        except ConflictError as exc:
            console.print(f"[bold yellow]Busy:[/] {exc}")
        except DriverError as exc:
            console.print(f"[bold red]Mount driver failed:[/] {exc}")
            if exc.cause:
                console.print(f"[dim]{exc.cause}[/]")
        except TransportError as exc:
            console.print(f"[bold red]Network error:[/] {exc}")
        except RMountError as exc:
            console.print(f"[bold red]Error:[/] {exc}")
        sys.exit(1)

    return wrapper
