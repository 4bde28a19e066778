"""Ownership bookkeeping for the capture processes run by the recorder."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Awaitable, Iterator, Protocol


class ProcessHandle(Protocol):
    """Subset of :class:`asyncio.subprocess.Process` used by the recorder."""

    pid: int
    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self) -> Awaitable[int]: ...


class RegistryConflict(RuntimeError):
    """Raised when a second live session is registered for one camera."""


@dataclass(slots=True, eq=False)
class RecordingSession:
    """Live association between a camera and the capture process it owns."""

    camera_id: str
    camera_name: str
    process: ProcessHandle
    started_at: float
    started_wall: datetime
    folder: Path

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    def to_dict(self, now: float | None = None) -> dict[str, object]:
        payload: dict[str, object] = {
            "camera_id": self.camera_id,
            "camera_name": self.camera_name,
            "pid": self.pid,
            "started_at": self.started_wall.isoformat(),
            "folder": str(self.folder),
        }
        if now is not None:
            payload["uptime_s"] = round(max(0.0, now - self.started_at), 3)
        return payload


class ProcessRegistry:
    """Map of camera identifier to its single owned recording session."""

    def __init__(self) -> None:
        self._sessions: dict[str, RecordingSession] = {}
        self._lock = Lock()

    def get(self, camera_id: str) -> RecordingSession | None:
        with self._lock:
            return self._sessions.get(camera_id)

    def set(self, session: RecordingSession) -> None:
        with self._lock:
            existing = self._sessions.get(session.camera_id)
            if existing is not None and existing is not session:
                raise RegistryConflict(
                    f"Camera {session.camera_id!r} already owns process {existing.pid}"
                )
            self._sessions[session.camera_id] = session

    def remove(self, camera_id: str, session: RecordingSession | None = None) -> RecordingSession | None:
        """Drop the entry for ``camera_id``.

        When ``session`` is given the entry is only removed if it is still that
        session, so a late exit cannot evict its replacement.
        """

        with self._lock:
            current = self._sessions.get(camera_id)
            if current is None:
                return None
            if session is not None and current is not session:
                return None
            del self._sessions[camera_id]
            return current

    def sessions(self) -> list[RecordingSession]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, camera_id: object) -> bool:
        with self._lock:
            return camera_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._sessions))


__all__ = ["ProcessHandle", "ProcessRegistry", "RecordingSession", "RegistryConflict"]
