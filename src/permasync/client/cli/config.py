"""Configuration utilities for permasync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click

from permasync.client.profiles import ProfileManager
from permasync.client.state import StateStoreError, SyncStateStore
from permasync.core.config import SyncConfig

CONFIG_DIR_ENV = "PERMASYNC_CONFIG_DIR"


def get_config_dir() -> Path:
    """Get the configuration directory for permasync.

    Returns:
        Path from PERMASYNC_CONFIG_DIR, or ~/.permasync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".permasync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_sync_config() -> SyncConfig:
    """Engine configuration from the ``sync`` key of the config file."""
    return SyncConfig.from_dict(load_config().get("sync"))


def get_profile_manager() -> ProfileManager:
    return ProfileManager(get_config_dir())


def open_store() -> SyncStateStore:
    """Open the state database of the active profile.

    Exits with an error message if no profile is active.
    """
    profile = get_profile_manager().get_active_profile()
    if profile is None:
        click.echo("Error: No active profile. Run 'permasync profile create' first.", err=True)
        sys.exit(1)
    db_path = get_profile_manager().get_profile_storage_path(profile.id)
    try:
        return SyncStateStore(db_path)
    except StateStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def configure_logging(verbose: bool) -> None:
    """Send permasync log records to stderr."""
    permasync_logger = logging.getLogger("permasync")
    if not permasync_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        permasync_logger.addHandler(handler)
    permasync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
