"""Tests for the automation section of the YAML config."""

import pytest

from power_automation.config import AutomationConfig, load_config


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"))
        assert config == AutomationConfig()
        assert config.action_timeout_seconds == 10.0
        assert config.default_cooldown_seconds == 300
        assert config.trace_entries == 100

    def test_reads_automation_section(self, tmp_path):
        path = write_config(tmp_path, (
            "zigbee:\n"
            "  channel: 15\n"
            "automation:\n"
            "  action_timeout_seconds: 5\n"
            "  default_cooldown_seconds: 60\n"
            "  snapshot_max_devices: 8\n"
            "  default_notification_channel: '#power'\n"
        ))
        config = load_config(path)

        assert config.action_timeout_seconds == 5.0
        assert isinstance(config.action_timeout_seconds, float)
        assert config.default_cooldown_seconds == 60
        assert config.snapshot_max_devices == 8
        assert config.default_notification_channel == "#power"
        assert config.log_entries == 500

    def test_missing_section_uses_defaults(self, tmp_path):
        assert load_config(write_config(tmp_path, "zigbee:\n  channel: 15\n")) == AutomationConfig()

    def test_empty_file_uses_defaults(self, tmp_path):
        assert load_config(write_config(tmp_path, "")) == AutomationConfig()

    def test_unknown_keys_warn(self, tmp_path, caplog):
        path = write_config(tmp_path, "automation:\n  retry_count: 3\n")
        with caplog.at_level("WARNING", logger="automation.config"):
            config = load_config(path)
        assert config == AutomationConfig()
        assert "retry_count" in caplog.text

    @pytest.mark.parametrize("value", ["'ten'", "true", "[1, 2]"])
    def test_non_numeric_rejected(self, tmp_path, value):
        path = write_config(tmp_path, f"automation:\n  action_timeout_seconds: {value}\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(write_config(tmp_path, "automation: 5\n"))
