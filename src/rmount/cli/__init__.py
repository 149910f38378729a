"""
rmount CLI -- mount S3-compatible buckets as local folders.

Each command group lives in its own module and is attached to the
main Click group by a register function.

Entry point: rmount.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="rmount")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
def main(verbose: bool):
    """rmount -- object storage, mounted.

    Data source credentials stay in an encrypted vault under your
    master password. Set RMOUNT_PASSWORD to skip the prompt.
    """
    setup_logging(verbose)


from .vault_cmd import register_vault_commands
from .source import register_source_commands
from .mount import register_mount_commands
from .sync_cmd import register_sync_commands
from .autostart_cmd import register_autostart_commands

register_vault_commands(main)
register_source_commands(main)
register_mount_commands(main)
register_sync_commands(main)
register_autostart_commands(main)
