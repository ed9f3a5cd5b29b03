"""Drive mapping commands for permasync CLI.

Commands:
- drive add: Map a remote drive to a local folder
- drive list: List drive mappings
- drive remove: Remove a drive mapping and its recorded state
- drive pause / drive resume: Toggle synchronization of a mapping
"""

from __future__ import annotations

import json
import sys
import uuid
from pathlib import Path

import click

from permasync.client.cli.config import open_store
from permasync.client.records import DriveMapping, SyncSettings
from permasync.client.state import StateStoreError
from permasync.core.types import DrivePrivacy, SyncDirection


@click.group()
def drive() -> None:
    """Manage drive mappings of the active profile."""


@drive.command("add")
@click.argument("remote_drive_id")
@click.argument("local_folder", type=click.Path(file_okay=False, path_type=Path))
@click.option("--name", "-n", default=None, help="Display name (default: folder name).")
@click.option(
    "--privacy",
    type=click.Choice([p.value for p in DrivePrivacy]),
    default=DrivePrivacy.PRIVATE.value,
    show_default=True,
)
@click.option("--root-folder-id", default=None, help="Remote id of the drive root folder.")
@click.option("--exclude", "-e", multiple=True, help="Pattern to exclude (repeatable).")
@click.option("--max-size", type=int, default=None, help="Largest file to sync, in bytes.")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.BIDIRECTIONAL.value,
    show_default=True,
)
def add_drive(
    remote_drive_id: str,
    local_folder: Path,
    name: str | None,
    privacy: str,
    root_folder_id: str | None,
    exclude: tuple[str, ...],
    max_size: int | None,
    direction: str,
) -> None:
    """Map REMOTE_DRIVE_ID to LOCAL_FOLDER.

    The folder is created if it does not exist.

    Examples:

        permasync drive add 7f3c... ~/Photos --exclude "*.raw" --max-size 50000000
    """
    local_path = local_folder.expanduser().resolve()
    local_path.mkdir(parents=True, exist_ok=True)
    mapping = DriveMapping(
        id=str(uuid.uuid4()),
        remote_drive_id=remote_drive_id,
        drive_name=name or local_path.name,
        privacy=DrivePrivacy(privacy),
        local_folder_path=str(local_path),
        root_folder_id=root_folder_id,
        sync_settings=SyncSettings(
            exclude_patterns=list(exclude),
            max_file_size=max_size,
            sync_direction=SyncDirection(direction),
        ),
    )

    store = open_store()
    try:
        store.add_drive_mapping(mapping)
    except StateStoreError as e:
        click.echo(f"Error: Cannot add drive: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(f"Added drive {mapping.drive_name} ({mapping.id}) -> {local_path}")


@drive.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print mappings as JSON.")
def list_drives(as_json: bool) -> None:
    """List drive mappings."""
    store = open_store()
    try:
        mappings = store.list_drive_mappings()
        if as_json:
            click.echo(json.dumps([store.export_mapping(m.id) for m in mappings], indent=2))
            return
    finally:
        store.close()

    if not mappings:
        click.echo("No drives.")
        return
    for mapping in mappings:
        state = "active" if mapping.is_active else "paused"
        direction = mapping.sync_settings.sync_direction.value
        click.echo(
            f"{mapping.id}  {mapping.drive_name}  {mapping.local_folder_path}  "
            f"[{state}, {direction}]"
        )


@drive.command("remove")
@click.argument("mapping_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def remove_drive(mapping_id: str, yes: bool) -> None:
    """Remove a drive mapping and everything recorded for it.

    Local files are left untouched.
    """
    if not yes:
        click.confirm(f"Remove drive mapping {mapping_id}?", abort=True)
    store = open_store()
    try:
        removed = store.remove_drive_mapping(mapping_id)
    finally:
        store.close()
    if not removed:
        click.echo(f"Error: Drive mapping not found: {mapping_id}", err=True)
        sys.exit(1)
    click.echo(f"Removed drive mapping {mapping_id}")


def _set_active(mapping_id: str, active: bool) -> None:
    store = open_store()
    try:
        if store.get_drive_mapping(mapping_id) is None:
            click.echo(f"Error: Drive mapping not found: {mapping_id}", err=True)
            sys.exit(1)
        store.update_drive_mapping(mapping_id, is_active=active)
    finally:
        store.close()
    click.echo(f"Drive {mapping_id} {'resumed' if active else 'paused'}")


@drive.command("pause")
@click.argument("mapping_id")
def pause_drive(mapping_id: str) -> None:
    """Stop synchronizing a drive (its state is kept)."""
    _set_active(mapping_id, False)


@drive.command("resume")
@click.argument("mapping_id")
def resume_drive(mapping_id: str) -> None:
    """Synchronize a paused drive again."""
    _set_active(mapping_id, True)
