"""Command-line interface for permasync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- profile: Create, list and switch profiles
- drive: Add, list, remove, pause and resume drive mappings
- files: Cached remote files of a drive
- uploads / downloads: Transfer history
- versions: Version history of a local file
- db-info: State database summary
"""

from __future__ import annotations

import click

from permasync.client.cli.config import (
    configure_logging,
    get_config_dir,
    get_config_file,
    load_config,
    load_sync_config,
    open_store,
    save_config,
)
from permasync.client.cli.drive import drive
from permasync.client.cli.profile import profile
from permasync.client.cli.status import db_info, downloads, files, uploads, versions


@click.group()
@click.version_option(package_name="permasync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """permasync - Keep local folders in sync with permanent storage drives."""
    configure_logging(verbose)


# Setup commands
cli.add_command(profile)
cli.add_command(drive)

# Status commands
cli.add_command(files)
cli.add_command(uploads)
cli.add_command(downloads)
cli.add_command(versions)
cli.add_command(db_info)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "configure_logging",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "load_sync_config",
    "open_store",
    "save_config",
]
