"""Persistent record of recorder events for troubleshooting."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecorderEvent:
    """A single supervisor or live-view event."""

    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "message": self.message,
            "camera_id": self.camera_id,
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "RecorderEvent | None":
        """Rebuild an event from its JSON form; ``None`` for malformed input."""

        if not isinstance(payload, Mapping):
            return None
        event, message = payload.get("event"), payload.get("message")
        if not (isinstance(event, str) and isinstance(message, str)):
            return None
        camera_id = payload.get("camera_id")
        metadata = payload.get("metadata")
        try:
            timestamp = float(payload["timestamp"])
        except (KeyError, TypeError, ValueError):
            timestamp = time.time()
        return cls(
            event=event,
            message=message,
            camera_id=camera_id if isinstance(camera_id, str) else None,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
            timestamp=timestamp,
        )


def _read_events(path: Path) -> Iterable[RecorderEvent]:
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            try:
                event = RecorderEvent.from_dict(json.loads(line))
            except ValueError:
                continue
            if event is not None:
                yield event


class EventLog:
    """Bounded JSON-lines journal shared by the recorder components.

    Only the newest ``max_entries`` events are kept in memory. The backing
    file is compacted to that window once it holds twice as many lines.
    Passing ``path=None`` keeps the log in memory only.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/recorder_events.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = int(max_entries)
        self._events: deque[RecorderEvent] = deque(maxlen=self._max_entries)
        self._lock = threading.Lock()
        self._lines_on_disk = 0
        self._path = self._prepare(path)
        if self._path is not None and self._path.exists():
            try:
                for event in _read_events(self._path):
                    self._events.append(event)
                    self._lines_on_disk += 1
            except OSError as exc:  # pragma: no cover - best effort logging
                logger.warning("Unable to load event log %s: %s", self._path, exc)

    @staticmethod
    def _prepare(path: Path | str | None) -> Path | None:
        if path is None:
            return None
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            logger.warning("Event log disabled, cannot create %s: %s", target.parent, exc)
            return None
        return target

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        event: str,
        message: str,
        *,
        camera_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RecorderEvent:
        entry = RecorderEvent(
            event=event,
            message=message,
            camera_id=camera_id,
            metadata={key: value for key, value in (metadata or {}).items() if value is not None},
        )
        with self._lock:
            self._events.append(entry)
            self._persist(entry)
        return entry

    def tail(self, limit: int | None = None, *, camera_id: str | None = None) -> list[RecorderEvent]:
        """Return the most recent events, oldest first."""

        with self._lock:
            events = [e for e in self._events if not camera_id or e.camera_id == camera_id]
        if limit is None:
            return events
        try:
            count = max(1, int(limit))
        except (TypeError, ValueError):
            count = 1
        return events[-count:]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _persist(self, entry: RecorderEvent) -> None:
        if self._path is None:
            return
        if self._lines_on_disk >= 2 * self._max_entries:
            self._compact()
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)
            return
        self._lines_on_disk += 1

    def _compact(self) -> None:
        scratch = self._path.with_name(self._path.name + ".tmp")
        lines = [json.dumps(e.to_dict(), separators=(",", ":")) for e in self._events]
        try:
            scratch.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            os.replace(scratch, self._path)
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to compact event log: %s", exc)
            return
        self._lines_on_disk = len(lines)


__all__ = ["EventLog", "RecorderEvent"]
