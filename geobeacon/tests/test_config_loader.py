"""Tests for agent_config.yaml loading and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from geobeacon.config_loader import (
    AgentConfig,
    _validate_and_build,
    get_agent_config,
    load_agent_config,
    reload_agent_config,
)
from geobeacon.exceptions import ConfigValidationError

AGENT_V2 = (
    "version: '2.0'\n"
    "foreground_service:\n  interval_seconds: 30\n"
    "notification_channel:\n  id: chan\n"
    "fallback_task:\n  task_id: t\n  unique_name: u\n  frequency_minutes: 60\n"
)


class TestBundledConfig:
    def test_foreground_defaults(self, agent_config: AgentConfig) -> None:
        fg = agent_config.foreground_service
        assert fg.interval_seconds == 15
        assert fg.auto_start is True
        assert fg.is_foreground_mode is True
        assert fg.notification_id == 888

    def test_notification_channel(self, agent_config: AgentConfig) -> None:
        channel = agent_config.notification_channel
        assert channel.channel_id == "location_service"
        assert channel.name == "Location Tracking"
        assert channel.importance == "low"

    def test_fallback_task(self, agent_config: AgentConfig) -> None:
        task = agent_config.fallback_task
        assert task.task_id == "location_task"
        assert task.unique_name == "updateLocationTask"
        assert task.frequency == timedelta(minutes=15)

    def test_collection(self, agent_config: AgentConfig) -> None:
        assert agent_config.collection == "locations"


class TestValidation:
    def test_minimal_config_uses_defaults(self) -> None:
        config = _validate_and_build(
            {
                "notification_channel": {"id": "chan"},
                "fallback_task": {"task_id": "t", "unique_name": "u"},
            }
        )
        assert config.foreground_service.interval_seconds == 15
        assert config.notification_channel.name == "chan"
        assert config.collection == "locations"

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(
                {
                    "foreground_service": {"interval_seconds": 0},
                    "notification_channel": {"id": "", "importance": "loud"},
                    "fallback_task": {"frequency_minutes": "often"},
                    "telemetry": {"collection": "a/b"},
                }
            )
        message = str(exc_info.value)
        assert "interval_seconds" in message
        assert "notification_channel.id" in message
        assert "importance" in message
        assert "fallback_task.task_id" in message
        assert "frequency_minutes" in message
        assert "telemetry.collection" in message

    def test_validation_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            _validate_and_build({"notification_channel": {}})

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("foreground_service: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_agent_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_agent_config(tmp_path / "absent.yaml")

    def test_cache_is_keyed_by_path(self, tmp_path: Path) -> None:
        path = tmp_path / "agent.yaml"
        path.write_text(AGENT_V2)
        bundled = get_agent_config()
        custom = get_agent_config(path)
        assert custom.version == "2.0"
        assert custom is get_agent_config(path)
        assert get_agent_config() is bundled
        assert bundled.version != "2.0"

    def test_reload_replaces_config(self, tmp_path: Path) -> None:
        path = tmp_path / "agent.yaml"
        path.write_text(AGENT_V2)
        get_agent_config(path)
        path.write_text(AGENT_V2.replace("2.0", "2.1"))
        config = reload_agent_config(path)
        assert config.version == "2.1"
        assert config.foreground_service.interval_seconds == 30
        assert config.fallback_task.frequency == timedelta(hours=1)
        assert get_agent_config(path) is config
