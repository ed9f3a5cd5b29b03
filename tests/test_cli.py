"""Tests for CLI commands - profile, drive and status commands."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from permasync.client.cli import cli
from permasync.client.cli.config import CONFIG_DIR_ENV, load_sync_config, save_config
from permasync.client.profiles import ProfileManager
from permasync.client.records import UploadRecord
from permasync.client.state import SyncStateStore
from permasync.core.types import TransferStatus


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at a temporary config directory."""
    config = tmp_path / ".permasync"
    monkeypatch.setenv(CONFIG_DIR_ENV, str(config))
    return config


@pytest.fixture
def active_profile(runner: CliRunner, config_dir: Path) -> str:
    """Create an active profile and return its id."""
    result = runner.invoke(cli, ["profile", "create", "Main", "addr-main"])
    assert result.exit_code == 0
    return ProfileManager(config_dir).get_active_profile().id


def _add_drive(runner: CliRunner, folder: Path, *args: str) -> str:
    result = runner.invoke(cli, ["drive", "add", "drive-1", str(folder), *args])
    assert result.exit_code == 0, result.output
    return result.output.split("(", 1)[1].split(")", 1)[0]


class TestProfileCommands:
    """Tests for 'permasync profile' commands."""

    def test_first_profile_becomes_active(self, runner: CliRunner, config_dir: Path) -> None:
        """The first profile should be activated automatically."""
        result = runner.invoke(cli, ["profile", "create", "Main", "addr-1"])

        assert result.exit_code == 0
        assert "Created profile Main" in result.output
        assert "Profile is now active." in result.output
        assert ProfileManager(config_dir).get_active_profile().name == "Main"

    def test_second_profile_not_activated(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Later profiles should only be activated on request."""
        result = runner.invoke(cli, ["profile", "create", "Other", "addr-2"])

        assert result.exit_code == 0
        assert "Profile is now active." not in result.output
        assert ProfileManager(config_dir).get_active_profile().id == active_profile

    def test_duplicate_address_fails(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Creating a second profile for an address should fail."""
        result = runner.invoke(cli, ["profile", "create", "Again", "addr-main"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_list_marks_active(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """The active profile should be marked with a star."""
        runner.invoke(cli, ["profile", "create", "Other", "addr-2"])
        result = runner.invoke(cli, ["profile", "list"])

        assert result.exit_code == 0
        assert f"* {active_profile}  Main" in result.output
        assert "Other" in result.output

    def test_list_empty(self, runner: CliRunner, config_dir: Path) -> None:
        """Should say when there are no profiles."""
        result = runner.invoke(cli, ["profile", "list"])
        assert result.exit_code == 0
        assert "No profiles." in result.output

    def test_use(self, runner: CliRunner, config_dir: Path, active_profile: str) -> None:
        """Should switch the active profile."""
        runner.invoke(cli, ["profile", "create", "Other", "addr-2"])
        other = next(
            p for p in ProfileManager(config_dir).list_profiles() if p.name == "Other"
        )

        result = runner.invoke(cli, ["profile", "use", other.id])

        assert result.exit_code == 0
        assert "Active profile: Other" in result.output
        assert ProfileManager(config_dir).get_active_profile().id == other.id

    def test_use_unknown(self, runner: CliRunner, config_dir: Path) -> None:
        """Switching to an unknown profile should fail."""
        result = runner.invoke(cli, ["profile", "use", "missing"])
        assert result.exit_code == 1


class TestDriveCommands:
    """Tests for 'permasync drive' commands."""

    def test_requires_profile(self, runner: CliRunner, config_dir: Path, tmp_path: Path) -> None:
        """Drive commands should fail without an active profile."""
        result = runner.invoke(cli, ["drive", "list"])
        assert result.exit_code == 1
        assert "No active profile" in result.output

    def test_add_and_list(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """An added drive should be listed with its settings."""
        folder = tmp_path / "Photos"
        mapping_id = _add_drive(runner, folder, "--exclude", "*.raw", "--max-size", "1000")

        assert folder.is_dir()
        result = runner.invoke(cli, ["drive", "list"])
        assert result.exit_code == 0
        assert mapping_id in result.output
        assert "[active, bidirectional]" in result.output

    def test_list_json(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """--json should print the mappings with their settings."""
        _add_drive(runner, tmp_path / "Photos", "--direction", "upload", "-e", "*.raw")

        result = runner.invoke(cli, ["drive", "list", "--json"])

        data = json.loads(result.output)
        assert data[0]["drive_name"] == "Photos"
        assert data[0]["sync_settings"]["sync_direction"] == "upload"
        assert data[0]["sync_settings"]["exclude_patterns"] == ["*.raw"]

    def test_list_empty(self, runner: CliRunner, config_dir: Path, active_profile: str) -> None:
        """Should say when there are no drives."""
        result = runner.invoke(cli, ["drive", "list"])
        assert "No drives." in result.output

    def test_duplicate_add_fails(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """Mapping the same drive to the same folder twice should fail."""
        _add_drive(runner, tmp_path / "Photos")
        result = runner.invoke(cli, ["drive", "add", "drive-1", str(tmp_path / "Photos")])
        assert result.exit_code == 1
        assert "Cannot add drive" in result.output

    def test_pause_and_resume(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """Pausing should mark the mapping inactive until resumed."""
        mapping_id = _add_drive(runner, tmp_path / "Photos")

        result = runner.invoke(cli, ["drive", "pause", mapping_id])
        assert result.exit_code == 0
        assert f"Drive {mapping_id} paused" in result.output
        assert "[paused," in runner.invoke(cli, ["drive", "list"]).output

        result = runner.invoke(cli, ["drive", "resume", mapping_id])
        assert f"Drive {mapping_id} resumed" in result.output

    def test_pause_unknown(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Pausing an unknown mapping should fail."""
        result = runner.invoke(cli, ["drive", "pause", "missing"])
        assert result.exit_code == 1

    def test_remove(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """Removing should forget the mapping but keep the folder."""
        folder = tmp_path / "Photos"
        mapping_id = _add_drive(runner, folder)

        result = runner.invoke(cli, ["drive", "remove", mapping_id, "--yes"])

        assert result.exit_code == 0
        assert "Removed drive mapping" in result.output
        assert folder.is_dir()
        assert "No drives." in runner.invoke(cli, ["drive", "list"]).output

    def test_remove_asks_confirmation(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """Declining the confirmation should keep the mapping."""
        mapping_id = _add_drive(runner, tmp_path / "Photos")

        result = runner.invoke(cli, ["drive", "remove", mapping_id], input="n\n")

        assert result.exit_code != 0
        assert mapping_id in runner.invoke(cli, ["drive", "list"]).output

    def test_remove_unknown(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Removing an unknown mapping should fail."""
        result = runner.invoke(cli, ["drive", "remove", "missing", "-y"])
        assert result.exit_code == 1


class TestStatusCommands:
    """Tests for the status commands."""

    def test_db_info(self, runner: CliRunner, config_dir: Path, active_profile: str) -> None:
        """Should show the database of the active profile."""
        result = runner.invoke(cli, ["db-info"])

        assert result.exit_code == 0
        assert "Database:" in result.output
        assert active_profile in result.output
        assert "Schema version: 3" in result.output
        assert "drive_mappings: 0" in result.output

    def test_empty_histories(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Should say when there are no transfers."""
        assert "No uploads." in runner.invoke(cli, ["uploads"]).output
        assert "No downloads." in runner.invoke(cli, ["downloads"]).output

    def test_files_unknown_mapping(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Listing files of an unknown mapping should fail."""
        result = runner.invoke(cli, ["files", "missing"])
        assert result.exit_code == 1

    def test_files_empty(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """A new drive has no cached files."""
        mapping_id = _add_drive(runner, tmp_path / "Photos")
        result = runner.invoke(cli, ["files", mapping_id, "--status", "pending"])
        assert "No files." in result.output

    def test_versions_without_history(
        self, runner: CliRunner, config_dir: Path, active_profile: str, tmp_path: Path
    ) -> None:
        """A file never uploaded has no versions."""
        folder = tmp_path / "Photos"
        _add_drive(runner, folder)
        result = runner.invoke(cli, ["versions", str(folder / "a.jpg")])
        assert result.exit_code == 0
        assert "No versions of" in result.output

    def test_uploads_listed(
        self, runner: CliRunner, config_dir: Path, active_profile: str
    ) -> None:
        """Recorded uploads should be listed with their errors."""
        manager = ProfileManager(config_dir)
        store = SyncStateStore(manager.get_profile_storage_path(active_profile))
        store.add_upload(UploadRecord(
            id="u1", local_path="/sync/a.txt", file_name="a.txt", file_size=1,
            status=TransferStatus.FAILED, error="Permission denied",
        ))
        store.close()

        result = runner.invoke(cli, ["uploads", "--status", "failed"])

        assert "/sync/a.txt" in result.output
        assert "(Permission denied)" in result.output


class TestConfig:
    """Tests for CLI configuration helpers."""

    def test_sync_config_from_file(self, config_dir: Path) -> None:
        """The sync section of config.json should configure the engine."""
        save_config({"sync": {"retry": {"max_retries": 7}}})
        assert load_sync_config().retry.max_retries == 7

    def test_version(self, runner: CliRunner) -> None:
        """--version should not fail."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
