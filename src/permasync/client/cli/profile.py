"""Profile commands for permasync CLI.

Commands:
- profile create: Create a profile
- profile list: List profiles
- profile use: Switch the active profile
"""

from __future__ import annotations

import sys

import click

from permasync.client.cli.config import get_profile_manager
from permasync.client.profiles import ProfileError


@click.group()
def profile() -> None:
    """Manage profiles.

    Each profile has its own drives and state database.
    """


@profile.command("create")
@click.argument("name")
@click.argument("address")
@click.option("--activate/--no-activate", default=None, help="Make it the active profile.")
def create_profile(name: str, address: str, activate: bool | None) -> None:
    """Create a profile for a wallet ADDRESS.

    The first profile becomes active unless --no-activate is given.
    """
    manager = get_profile_manager()
    first = not manager.list_profiles()
    try:
        created = manager.create_profile(name, address)
    except ProfileError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Created profile {created.name} ({created.id})")
    if activate or (activate is None and first):
        manager.set_active_profile(created.id)
        click.echo("Profile is now active.")


@profile.command("list")
def list_profiles() -> None:
    """List profiles (the active one is marked with *)."""
    manager = get_profile_manager()
    profiles = manager.list_profiles()
    if not profiles:
        click.echo("No profiles.")
        return
    active = manager.get_active_profile()
    for entry in profiles:
        marker = "*" if active and active.id == entry.id else " "
        click.echo(f"{marker} {entry.id}  {entry.name}  {entry.address}")


@profile.command("use")
@click.argument("profile_id")
def use_profile(profile_id: str) -> None:
    """Switch the active profile."""
    try:
        selected = get_profile_manager().set_active_profile(profile_id)
    except ProfileError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Active profile: {selected.name}")
