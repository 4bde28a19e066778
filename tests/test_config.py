from __future__ import annotations

import json
from pathlib import Path

import pytest

from cam_home.config import (
    DEFAULT_APP_NAME,
    DEFAULT_RECORDER_SETTINGS,
    DEFAULT_RECORDING_PATH,
    ConfigManager,
    RecorderSettings,
)


def test_defaults_when_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    assert manager.get_app_name() == DEFAULT_APP_NAME
    assert manager.get_recording_path() == DEFAULT_RECORDING_PATH
    assert manager.get_recorder_settings() == DEFAULT_RECORDER_SETTINGS


def test_update_reports_path_change(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    manager = ConfigManager(path)
    config, changed = manager.update({"recordingPath": str(tmp_path / "rec"), "theme": "dark"})
    assert changed is True
    assert config["recordingPath"] == str(tmp_path / "rec")
    assert config["theme"] == "dark"

    _, changed_again = manager.update({"appName": "Home"})
    assert changed_again is False

    stored = json.loads(path.read_text())
    assert stored["appName"] == "Home"
    assert stored["theme"] == "dark"
    assert stored["recordingPath"] == str(tmp_path / "rec")


def test_empty_recording_path_disables_recording(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    manager = ConfigManager(path)
    manager.set_recording_path("  ")
    assert manager.get_recording_path() is None
    assert json.loads(path.read_text())["recordingPath"] == ""
    assert ConfigManager(path).get_recording_path() is None


def test_recorder_settings_merge(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    settings = manager.set_recorder_settings({"restart_delay_s": 30})
    assert settings.restart_delay_s == 30.0
    assert settings.segment_seconds == DEFAULT_RECORDER_SETTINGS.segment_seconds
    assert ConfigManager(tmp_path / "config.json").get_recorder_settings() == settings


@pytest.mark.parametrize(
    "payload",
    [
        {"segment_seconds": 5},
        {"restart_delay_s": -1},
        {"min_uptime_s": float("nan")},
        {"unknown": 1},
    ],
)
def test_recorder_settings_validation(tmp_path: Path, payload) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.update({"recorder": payload})
    assert manager.get_recorder_settings() == DEFAULT_RECORDER_SETTINGS


def test_invalid_app_name_rejected(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.update({"appName": ""})


def test_corrupt_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]")
    with pytest.raises(RuntimeError):
        ConfigManager(path)


def test_recorder_settings_coerces_types() -> None:
    settings = RecorderSettings(segment_seconds="60", restart_delay_s="1.5")
    assert settings.segment_seconds == 60
    assert settings.restart_delay_s == 1.5
