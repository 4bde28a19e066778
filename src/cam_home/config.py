"""Configuration management for CamHome."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

DEFAULT_APP_NAME = "CamHome"
DEFAULT_RECORDING_PATH = os.environ.get("CAMHOME_RECORDING_PATH", "data/recordings")

_RESERVED_KEYS = frozenset({"appName", "recordingPath", "recorder"})


@dataclass(frozen=True, slots=True)
class RecorderSettings:
    """Timing policy applied by the recording supervisor."""

    segment_seconds: int = 600
    restart_delay_s: float = 15.0
    min_uptime_s: float = 10.0
    settle_delay_s: float = 2.0

    def __post_init__(self) -> None:
        try:
            segment = int(self.segment_seconds)
            restart = float(self.restart_delay_s)
            uptime = float(self.min_uptime_s)
            settle = float(self.settle_delay_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Recorder settings must be numeric") from exc
        if segment < 10 or segment > 86400:
            raise ValueError("Segment length must be between 10 and 86400 seconds")
        for label, value in (
            ("Restart delay", restart),
            ("Minimum uptime", uptime),
            ("Settle delay", settle),
        ):
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{label} must be a non-negative number")
        object.__setattr__(self, "segment_seconds", segment)
        object.__setattr__(self, "restart_delay_s", restart)
        object.__setattr__(self, "min_uptime_s", uptime)
        object.__setattr__(self, "settle_delay_s", settle)

    def to_dict(self) -> Dict[str, float | int]:
        return {
            "segment_seconds": int(self.segment_seconds),
            "restart_delay_s": float(self.restart_delay_s),
            "min_uptime_s": float(self.min_uptime_s),
            "settle_delay_s": float(self.settle_delay_s),
        }


DEFAULT_RECORDER_SETTINGS = RecorderSettings()


def _parse_recording_path(value: Any, *, default: str | None) -> str | None:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError("Recording path must be a string")
    cleaned = value.strip()
    return cleaned or None


def _parse_recorder_settings(
    value: Any, *, default: RecorderSettings
) -> RecorderSettings:
    if value is None:
        return default
    if isinstance(value, RecorderSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Recorder settings must be an object")
    merged = {**default.to_dict(), **{k: v for k, v in value.items() if v is not None}}
    unknown = set(merged) - set(default.to_dict())
    if unknown:
        raise ValueError(f"Unknown recorder settings: {', '.join(sorted(unknown))}")
    return RecorderSettings(**merged)


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._app_name,
            self._recording_path,
            self._recorder,
            self._extra,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[str, str | None, RecorderSettings, dict[str, Any]]:
        if not self._path.exists():
            return DEFAULT_APP_NAME, DEFAULT_RECORDING_PATH, DEFAULT_RECORDER_SETTINGS, {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            app_name_raw = payload.get("appName", DEFAULT_APP_NAME)
            if isinstance(app_name_raw, str) and app_name_raw.strip():
                app_name = app_name_raw.strip()
            else:
                app_name = DEFAULT_APP_NAME
            recording_path = _parse_recording_path(
                payload.get("recordingPath"), default=DEFAULT_RECORDING_PATH
            )
            recorder = _parse_recorder_settings(
                payload.get("recorder"), default=DEFAULT_RECORDER_SETTINGS
            )
            extra = {k: v for k, v in payload.items() if k not in _RESERVED_KEYS}
            return app_name, recording_path, recorder, extra
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        self._path.write_text(json.dumps(self._snapshot(), indent=2), encoding="utf-8")

    def _snapshot(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self._extra)
        payload.update(
            {
                "appName": self._app_name,
                "recordingPath": self._recording_path or "",
                "recorder": self._recorder.to_dict(),
            }
        )
        return payload

    def get_app_name(self) -> str:
        with self._lock:
            return self._app_name

    def get_recording_path(self) -> str | None:
        with self._lock:
            return self._recording_path

    def set_recording_path(self, value: Any) -> str | None:
        recording_path = _parse_recording_path(value, default=None)
        with self._lock:
            self._recording_path = recording_path
            self._save()
        return recording_path

    def get_recorder_settings(self) -> RecorderSettings:
        with self._lock:
            return self._recorder

    def set_recorder_settings(self, data: Mapping[str, Any] | RecorderSettings) -> RecorderSettings:
        with self._lock:
            settings = _parse_recorder_settings(data, default=self._recorder)
            self._recorder = settings
            self._save()
        return settings

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot()

    def update(self, data: Mapping[str, Any]) -> tuple[Dict[str, Any], bool]:
        """Merge ``data`` into the configuration.

        Returns the new configuration and whether the recording path changed.
        Unknown keys are stored verbatim for the dashboard.
        """

        if not isinstance(data, Mapping):
            raise ValueError("Configuration update must be an object")
        with self._lock:
            app_name = self._app_name
            if "appName" in data:
                candidate = data["appName"]
                if not isinstance(candidate, str) or not candidate.strip():
                    raise ValueError("Application name must be a non-empty string")
                app_name = candidate.strip()
            recording_path = self._recording_path
            if "recordingPath" in data:
                recording_path = _parse_recording_path(data["recordingPath"], default=None)
            recorder = _parse_recorder_settings(data.get("recorder"), default=self._recorder)
            path_changed = recording_path != self._recording_path
            self._app_name = app_name
            self._recording_path = recording_path
            self._recorder = recorder
            for key, value in data.items():
                if key not in _RESERVED_KEYS:
                    self._extra[key] = value
            self._save()
            return self._snapshot(), path_changed


__all__ = [
    "ConfigManager",
    "DEFAULT_APP_NAME",
    "DEFAULT_RECORDER_SETTINGS",
    "DEFAULT_RECORDING_PATH",
    "RecorderSettings",
]
