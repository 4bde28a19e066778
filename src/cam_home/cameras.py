"""Camera records and their JSON backed persistence."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Mapping, Sequence

from .stream_address import resolve_stream_url

# Keys accepted from the dashboard in camelCase and mapped onto record fields.
_FIELD_ALIASES = {
    "streamUrl": "stream_url",
    "stream_url": "stream_url",
}
_CORE_FIELDS = ("id", "name", "stream_url", "username", "password", "status")


class CameraStatus(str, Enum):
    """Operational state reported for a camera."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    RECORDING = "RECORDING"
    ERROR = "ERROR"

    @property
    def recordable(self) -> bool:
        return self in (CameraStatus.ONLINE, CameraStatus.RECORDING)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True, slots=True)
class CameraRecord:
    """Read-only view of a configured camera."""

    id: str
    name: str
    stream_url: str | None = None
    username: str | None = None
    password: str | None = None
    status: CameraStatus = CameraStatus.OFFLINE
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        identifier = str(self.id).strip() if self.id is not None else ""
        if not identifier:
            raise ValueError("Camera id must not be empty")
        object.__setattr__(self, "id", identifier)
        name = str(self.name).strip() if self.name is not None else ""
        object.__setattr__(self, "name", name or identifier)
        object.__setattr__(self, "stream_url", _optional_text(self.stream_url))
        object.__setattr__(self, "username", _optional_text(self.username))
        object.__setattr__(self, "password", _optional_text(self.password))
        status = self.status
        if not isinstance(status, CameraStatus):
            try:
                status = CameraStatus(str(status).strip().upper())
            except ValueError as exc:
                raise ValueError(f"Unknown camera status {self.status!r}") from exc
            object.__setattr__(self, "status", status)

    @property
    def resolved_url(self) -> str | None:
        return resolve_stream_url(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CameraRecord":
        if not isinstance(payload, Mapping):
            raise ValueError("Camera entries must be JSON objects")
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in payload.items():
            target = _FIELD_ALIASES.get(key, key)
            if target in _CORE_FIELDS:
                values[target] = value
            else:
                extra[key] = value
        if "id" not in values:
            raise ValueError("Camera entries require an id")
        values.setdefault("name", values["id"])
        values.setdefault("status", CameraStatus.OFFLINE)
        return cls(**values, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "name": self.name,
                "streamUrl": self.stream_url,
                "username": self.username,
                "password": self.password,
                "status": self.status.value,
            }
        )
        return payload


@dataclass(frozen=True, slots=True)
class CameraDiff:
    """Supervisor actions implied by replacing one camera list with another."""

    start: tuple[CameraRecord, ...] = ()
    stop: tuple[str, ...] = ()


def needs_restart(previous: CameraRecord | None, current: CameraRecord) -> bool:
    """Return ``True`` when ``current`` must (re)start its recording session."""

    if previous is None:
        return True
    if previous.resolved_url != current.resolved_url:
        return True
    return previous.status is not current.status


def diff_cameras(
    previous: Iterable[CameraRecord], current: Iterable[CameraRecord]
) -> CameraDiff:
    old = {camera.id: camera for camera in previous}
    new = list(current)
    new_ids = {camera.id for camera in new}
    start = tuple(camera for camera in new if needs_restart(old.get(camera.id), camera))
    stop = tuple(camera_id for camera_id in old if camera_id not in new_ids)
    return CameraDiff(start=start, stop=stop)


class CameraStore:
    """JSON file holding the configured cameras."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._cameras: dict[str, CameraRecord] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, CameraRecord]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to load cameras: {exc}") from exc
        if not isinstance(raw, list):
            raise RuntimeError("Failed to load cameras: file must contain a JSON list")
        cameras: dict[str, CameraRecord] = {}
        for entry in raw:
            camera = CameraRecord.from_dict(entry)
            cameras[camera.id] = camera
        return cameras

    def _save(self) -> None:
        payload = [camera.to_dict() for camera in self._cameras.values()]
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def list(self) -> list[CameraRecord]:
        with self._lock:
            return list(self._cameras.values())

    def get(self, camera_id: str) -> CameraRecord | None:
        with self._lock:
            return self._cameras.get(camera_id)

    def replace_all(self, cameras: Sequence[CameraRecord]) -> CameraDiff:
        """Store ``cameras`` as the complete list and return the implied diff."""

        seen: set[str] = set()
        for camera in cameras:
            if camera.id in seen:
                raise ValueError(f"Duplicate camera id {camera.id!r}")
            seen.add(camera.id)
        with self._lock:
            diff = diff_cameras(self._cameras.values(), cameras)
            self._cameras = {camera.id: camera for camera in cameras}
            self._save()
        return diff

    def upsert(self, camera: CameraRecord) -> bool:
        """Insert or replace ``camera``; return whether recording must restart."""

        with self._lock:
            previous = self._cameras.get(camera.id)
            self._cameras[camera.id] = camera
            self._save()
        return needs_restart(previous, camera)

    def delete(self, camera_id: str) -> CameraRecord | None:
        with self._lock:
            removed = self._cameras.pop(camera_id, None)
            if removed is not None:
                self._save()
        return removed


__all__ = [
    "CameraDiff",
    "CameraRecord",
    "CameraStatus",
    "CameraStore",
    "diff_cameras",
    "needs_restart",
]
