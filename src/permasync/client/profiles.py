"""Profiles: independent sets of drive mappings.

This module provides:
- Profile: A named identity with its own state database
- ProfileManager: Stores profiles in ``profiles.json``
- ProfileError: Invalid profile operation

Layout below the base directory:
    profiles.json             profiles and the active profile id
    profiles/<id>/data.db     state database of the profile
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DATABASE_NAME = "data.db"


class ProfileError(Exception):
    """A profile operation failed."""


@dataclass
class Profile:
    id: str
    name: str
    address: str
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Profile:
        return cls(
            id=data["id"],
            name=data["name"],
            address=data["address"],
            created_at=data.get("created_at", time.time()),
            last_used_at=data.get("last_used_at", time.time()),
        )


class ProfileManager:
    """Creates, selects and deletes profiles."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self.profiles_dir = self.base_dir / "profiles"
        self.config_path = self.base_dir / "profiles.json"
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.config_path.exists():
            return {"profiles": [], "active_profile_id": None}
        try:
            data = json.loads(self.config_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ProfileError(f"Cannot read {self.config_path}: {e}") from e
        data.setdefault("profiles", [])
        data.setdefault("active_profile_id", None)
        return dict(data)

    def _save(self, data: dict[str, Any]) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(data, indent=2))

    def create_profile(self, name: str, address: str) -> Profile:
        """Create a profile and its storage directory.

        Raises:
            ProfileError: If a profile already uses this address.
        """
        with self._lock:
            data = self._load()
            if any(p["address"] == address for p in data["profiles"]):
                raise ProfileError("A profile with this address already exists")

            profile = Profile(id=str(uuid.uuid4()), name=name, address=address)
            (self.profiles_dir / profile.id).mkdir(parents=True, exist_ok=True)
            data["profiles"].append(asdict(profile))
            self._save(data)
        logger.info("Created profile %s (%s)", profile.name, profile.id)
        return profile

    def list_profiles(self) -> list[Profile]:
        with self._lock:
            data = self._load()
        return [Profile.from_dict(p) for p in data["profiles"]]

    def get_profile(self, profile_id: str) -> Profile | None:
        for profile in self.list_profiles():
            if profile.id == profile_id:
                return profile
        return None

    def set_active_profile(self, profile_id: str) -> Profile:
        """Make a profile the active one.

        Raises:
            ProfileError: If the profile does not exist.
        """
        with self._lock:
            data = self._load()
            for entry in data["profiles"]:
                if entry["id"] == profile_id:
                    entry["last_used_at"] = time.time()
                    break
            else:
                raise ProfileError(f"Profile not found: {profile_id}")
            data["active_profile_id"] = profile_id
            self._save(data)
        logger.info("Active profile is now %s", profile_id)
        return Profile.from_dict(entry)

    def get_active_profile(self) -> Profile | None:
        with self._lock:
            data = self._load()
        active_id = data["active_profile_id"]
        for entry in data["profiles"]:
            if entry["id"] == active_id:
                return Profile.from_dict(entry)
        return None

    def delete_profile(self, profile_id: str) -> None:
        """Delete a profile and its storage directory.

        The caller must close the profile's database first.

        Raises:
            ProfileError: If the profile does not exist.
        """
        with self._lock:
            data = self._load()
            remaining = [p for p in data["profiles"] if p["id"] != profile_id]
            if len(remaining) == len(data["profiles"]):
                raise ProfileError(f"Profile not found: {profile_id}")
            data["profiles"] = remaining
            if data["active_profile_id"] == profile_id:
                data["active_profile_id"] = None
            self._save(data)

        profile_dir = self.profiles_dir / profile_id
        try:
            shutil.rmtree(profile_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Failed to delete profile directory %s", profile_dir)
        logger.info("Deleted profile %s", profile_id)

    def get_profile_storage_path(self, profile_id: str, filename: str = DATABASE_NAME) -> Path:
        return self.profiles_dir / profile_id / filename
