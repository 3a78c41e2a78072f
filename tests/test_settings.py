"""
Tests for config_safeguard.config.settings module.

This test suite covers:
- Settings loading and saving
- Default settings initialization
- Settings persistence to JSON file
- Type conversion helpers (get_int, get_path)
- Error handling for corrupted settings files
"""

import json
from pathlib import Path

import pytest

from config_safeguard.config import settings


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    """Point the settings module at a temporary file and restore defaults afterwards."""
    path = tmp_path / "settings.json"
    monkeypatch.setattr("config_safeguard.config.settings.SETTINGS_PATH", path)
    yield path
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, settings_file):
        """Test that default settings are loaded when file doesn't exist."""
        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["max_rollbacks"] == settings.DEFAULT_MAX_ROLLBACKS
        assert settings.settings_store.values["system_root"] == "/"

    def test_load_merges_with_defaults(self, settings_file):
        """Test that loaded settings merge with defaults."""
        settings_file.write_text(json.dumps({"max_rollbacks": 3}))

        settings.load_settings()

        assert settings.get_setting("max_rollbacks") == 3
        assert settings.get_setting("network_timeout_seconds") == 5

    def test_corrupted_file_falls_back_to_defaults(self, settings_file):
        """Test that invalid JSON is ignored."""
        settings_file.write_text("{broken")

        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_non_dict_json_ignored(self, settings_file):
        """Test that a JSON list is not merged."""
        settings_file.write_text("[1, 2]")
        settings.load_settings()
        assert settings.settings_store.values == settings.DEFAULT_SETTINGS


class TestSaveSettings:
    """Tests for save_settings() and set_setting()."""

    def test_set_setting_persists(self, settings_file):
        """Test set_setting writes the file."""
        settings.load_settings()
        settings.set_setting("max_rollbacks", 7)

        data = json.loads(settings_file.read_text())
        assert data["max_rollbacks"] == 7

    def test_save_creates_parent(self, tmp_path, monkeypatch):
        """Test the settings directory is created on save."""
        path = tmp_path / "nested" / "dir" / "settings.json"
        monkeypatch.setattr("config_safeguard.config.settings.SETTINGS_PATH", path)

        settings.save_settings()

        assert path.exists()


class TestTypedGetters:
    """Tests for get_int() and get_path()."""

    def test_get_int_converts_strings(self, settings_file):
        """Test numeric strings are accepted."""
        settings.settings_store.values["max_rollbacks"] = "4"
        assert settings.get_int("max_rollbacks", 10) == 4

    def test_get_int_falls_back_on_junk(self, settings_file):
        """Test a non-numeric value yields the default."""
        settings.settings_store.values["max_rollbacks"] = "many"
        assert settings.get_int("max_rollbacks", 10) == 10

    def test_get_path(self, settings_file):
        """Test paths come back as Path objects."""
        settings.settings_store.values["backup_root"] = "/srv/backups"
        assert settings.get_path("backup_root") == Path("/srv/backups")

    def test_get_path_without_value_raises(self, settings_file):
        """Test a missing path with no default is an error."""
        with pytest.raises(KeyError):
            settings.get_path("nonexistent_key")
