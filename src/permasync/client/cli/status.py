"""Status commands for permasync CLI.

Commands:
- files: Cached remote files of a drive
- uploads: Upload history
- downloads: Download history
- versions: Version history of a local file
- db-info: State database summary
"""

from __future__ import annotations

import datetime
import sys
from pathlib import Path

import click

from permasync.client.cli.config import open_store
from permasync.core.types import SyncStatus, TransferStatus


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "-"
    return datetime.datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
@click.argument("mapping_id")
@click.option(
    "--status",
    "status",
    type=click.Choice([s.value for s in SyncStatus]),
    default=None,
    help="Only files with this sync status.",
)
def files(mapping_id: str, status: str | None) -> None:
    """List cached remote files of a drive."""
    store = open_store()
    try:
        if store.get_drive_mapping(mapping_id) is None:
            click.echo(f"Error: Drive mapping not found: {mapping_id}", err=True)
            sys.exit(1)
        if status:
            records = store.list_files_by_status(mapping_id, SyncStatus(status))
        else:
            records = store.list_file_metadata(mapping_id)
    finally:
        store.close()

    if not records:
        click.echo("No files.")
        return
    for record in records:
        size = "-" if record.size is None else str(record.size)
        click.echo(f"{record.sync_status.value:<12} {size:>12}  {record.path}")


@click.command()
@click.option(
    "--status",
    "status",
    type=click.Choice([s.value for s in TransferStatus]),
    default=None,
)
@click.option("--limit", "-l", type=int, default=50, show_default=True)
def uploads(status: str | None, limit: int) -> None:
    """Show the upload history."""
    store = open_store()
    try:
        if status:
            records = store.list_uploads_by_status(TransferStatus(status))[:limit]
        else:
            records = store.list_uploads(limit)
    finally:
        store.close()

    if not records:
        click.echo("No uploads.")
        return
    for record in records:
        line = f"{_format_time(record.created_at)}  {record.status.value:<10} {record.local_path}"
        if record.error:
            line += f"  ({record.error})"
        click.echo(line)


@click.command()
@click.option("--limit", "-l", type=int, default=50, show_default=True)
def downloads(limit: int) -> None:
    """Show the download history."""
    store = open_store()
    try:
        records = store.list_downloads(limit)
    finally:
        store.close()

    if not records:
        click.echo("No downloads.")
        return
    for record in records:
        line = (
            f"{_format_time(record.created_at)}  {record.status.value:<11} "
            f"{record.progress:5.1f}%  {record.local_path}"
        )
        if record.error:
            line += f"  ({record.error})"
        click.echo(line)


@click.command()
@click.argument("file_path", type=click.Path(path_type=Path))
@click.option("--mapping", "mapping_id", default=None, help="Drive mapping of the file.")
def versions(file_path: Path, mapping_id: str | None) -> None:
    """Show the version history of a local file."""
    path = str(file_path.expanduser().resolve())
    store = open_store()
    try:
        if mapping_id is None:
            for mapping in store.list_drive_mappings():
                root = mapping.local_folder_path.rstrip("/") + "/"
                if path.startswith(root):
                    mapping_id = mapping.id
                    break
        history = store.list_file_versions(path, mapping_id)
    finally:
        store.close()

    if not history:
        click.echo(f"No versions of {path}.")
        return
    for version in history:
        marker = "*" if version.is_latest else " "
        click.echo(
            f"{marker} v{version.version}  {_format_time(version.created_at)}  "
            f"{version.change_type.value:<7} {version.file_size:>10}  {version.file_hash[:16]}"
        )


@click.command("db-info")
def db_info() -> None:
    """Show the state database path, schema version and row counts."""
    store = open_store()
    try:
        info = store.get_database_info()
    finally:
        store.close()

    click.echo(f"Database: {info['path']}")
    click.echo(f"Schema version: {info['schema_version']}")
    for table, count in sorted(info["tables"].items()):
        click.echo(f"  {table}: {count}")
