"""
Tests for configuration loading.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from minderbook.config import AppConfig, CalendarSyncConfig, PolicyConfig


class TestAppConfig:
    """Tests for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.timezone == "Europe/Dublin"
        assert config.data_file == Path("minderbook-data.json")
        assert config.calendar_sync is None
        assert config.policy.late_cancellation_hours == 24

    def test_build_policy(self):
        config = AppConfig(timezone="Europe/Berlin", policy=PolicyConfig(open_when_undeclared=False, min_lead_minutes=30))

        policy = config.build_policy()

        assert policy.timezone == "Europe/Berlin"
        assert policy.open_when_undeclared is False
        assert policy.min_lead_minutes == 30
        assert policy.emergency_max_lead_hours == 24

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="Unknown timezone"):
            AppConfig(timezone="Mars/Olympus_Mons")

    def test_non_positive_window_rejected(self):
        with pytest.raises(ValidationError, match="greater than zero"):
            PolicyConfig(late_cancellation_hours=0)

    def test_negative_lead_rejected(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            PolicyConfig(min_lead_minutes=-5)

    def test_calendar_sync_needs_token(self):
        with pytest.raises(ValidationError):
            CalendarSyncConfig()


class TestLoadFromYaml:
    """Tests for reading YAML files."""

    def test_load_full_config(self, tmp_path):
        config_file = tmp_path / "minderbook.yaml"
        config_file.write_text(
            "timezone: Europe/London\n"
            "data_file: /var/lib/minderbook/data.json\n"
            "policy:\n"
            "  late_cancellation_hours: 48\n"
            "  emergency_bypasses_past_start: true\n"
            "calendar_sync:\n"
            "  calendar_id: minder@example.com\n"
            "  access_token: abc123\n",
            encoding="utf-8",
        )

        config = AppConfig.load_from_yaml(config_file)

        assert config.timezone == "Europe/London"
        assert config.data_file == Path("/var/lib/minderbook/data.json")
        assert config.policy.late_cancellation_hours == 48
        assert config.policy.emergency_bypasses_past_start is True
        assert config.calendar_sync.calendar_id == "minder@example.com"
        assert config.calendar_sync.base_url == "https://www.googleapis.com/calendar/v3"

    def test_empty_file_gives_defaults(self, tmp_path):
        config_file = tmp_path / "minderbook.yaml"
        config_file.write_text("", encoding="utf-8")

        assert AppConfig.load_from_yaml(config_file) == AppConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            AppConfig.load_from_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "minderbook.yaml"
        config_file.write_text("policy: [unclosed", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            AppConfig.load_from_yaml(config_file)

    def test_root_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "minderbook.yaml"
        config_file.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping at the root"):
            AppConfig.load_from_yaml(config_file)
