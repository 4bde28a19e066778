"""Continuous recording supervisor owning one ffmpeg process per camera."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Protocol

from .cameras import CameraRecord
from .config import DEFAULT_RECORDER_SETTINGS, RecorderSettings
from .event_log import EventLog
from .ffmpeg import ProcessLauncher, build_record_command, spawn_process
from .registry import ProcessRegistry, RecordingSession
from .stream_address import folder_token, redact_url, resolve_stream_url

logger = logging.getLogger(__name__)


class CameraSource(Protocol):
    """Read access to the current camera records."""

    def list(self) -> Iterable[CameraRecord]: ...

    def get(self, camera_id: str) -> CameraRecord | None: ...


class RecordingError(RuntimeError):
    """Base class for failures that keep a camera from recording."""


class ConfigurationMissing(RecordingError):
    """Raised when a camera cannot record because something is not configured."""


class FolderCreateFailed(RecordingError):
    """Raised when the per-camera output folder cannot be created."""


class ProcessSpawnFailed(RecordingError):
    """Raised when the capture process could not be launched."""


class SessionState(str, Enum):
    """Lifecycle of the recording session for one camera."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESTART_PENDING = "restart_pending"


class ExitOutcome(str, Enum):
    """Classification of a capture process exit."""

    CRASHED = "crashed"
    COMPLETED = "completed"
    EXITED_IMMEDIATELY = "exited_immediately"
    SUPERSEDED = "superseded"

    @property
    def restart(self) -> bool:
        return self in (ExitOutcome.CRASHED, ExitOutcome.COMPLETED)


def classify_exit(
    exit_code: int | None, uptime_s: float, *, min_uptime_s: float = 10.0
) -> ExitOutcome:
    """Decide how a process exit is treated by the restart policy.

    Any non-zero exit is a crash and is retried. A clean exit is only retried
    when the process ran for longer than ``min_uptime_s``; a clean exit below
    that floor usually means the input is permanently broken.
    """

    if exit_code != 0:
        return ExitOutcome.CRASHED
    if uptime_s > min_uptime_s:
        return ExitOutcome.COMPLETED
    return ExitOutcome.EXITED_IMMEDIATELY


@dataclass(frozen=True, slots=True)
class ScheduleRestart:
    camera_id: str
    delay_s: float
    outcome: ExitOutcome
    exit_code: int | None


@dataclass(frozen=True, slots=True)
class NoAction:
    camera_id: str
    outcome: ExitOutcome
    exit_code: int | None


Effect = ScheduleRestart | NoAction


@dataclass(slots=True)
class PendingRestart:
    handle: asyncio.TimerHandle
    due_wall: datetime


class RecordingSupervisor:
    """Start, watch, stop and restart the capture process of every camera."""

    def __init__(
        self,
        cameras: CameraSource,
        *,
        destination: Callable[[], str | Path | None],
        settings: Callable[[], RecorderSettings] | None = None,
        registry: ProcessRegistry | None = None,
        launcher: ProcessLauncher = spawn_process,
        ffmpeg_binary: str | None = "ffmpeg",
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cameras = cameras
        self._destination = destination
        self._settings = settings or (lambda: DEFAULT_RECORDER_SETTINGS)
        self._registry = registry if registry is not None else ProcessRegistry()
        self._launcher = launcher
        self._binary = ffmpeg_binary
        self._events = event_log
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}
        self._starting: set[str] = set()
        self._stopping: set[RecordingSession] = set()
        self._restarts: dict[str, PendingRestart] = {}
        self._tasks: set[asyncio.Task] = set()
        self._init_task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def ffmpeg_available(self) -> bool:
        return bool(self._binary)

    def has_pending_restart(self, camera_id: str) -> bool:
        return camera_id in self._restarts

    def state(self, camera_id: str) -> SessionState:
        if camera_id in self._starting:
            return SessionState.STARTING
        if camera_id in self._registry:
            return SessionState.RUNNING
        if camera_id in self._restarts:
            return SessionState.RESTART_PENDING
        if any(session.camera_id == camera_id for session in self._stopping):
            return SessionState.STOPPING
        return SessionState.STOPPED

    def status(self) -> list[dict[str, object]]:
        now = self._clock()
        known: list[str] = []
        names: dict[str, str] = {}
        for camera in self._cameras.list():
            known.append(camera.id)
            names[camera.id] = camera.name
        for camera_id in (*self._registry, *self._restarts, *self._starting):
            if camera_id not in names:
                known.append(camera_id)
                names[camera_id] = camera_id
        report: list[dict[str, object]] = []
        for camera_id in known:
            entry: dict[str, object] = {
                "camera_id": camera_id,
                "camera_name": names[camera_id],
                "state": self.state(camera_id).value,
            }
            session = self._registry.get(camera_id)
            if session is not None:
                entry.update(session.to_dict(now))
            pending = self._restarts.get(camera_id)
            if pending is not None:
                entry["restart_at"] = pending.due_wall.isoformat()
            report.append(entry)
        return report

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    async def start(self, camera: CameraRecord) -> bool:
        """Handle a start request; return ``True`` when a session was created."""

        if self._closed:
            return False
        lock = self._locks.setdefault(camera.id, asyncio.Lock())
        async with lock:
            self.stop(camera.id)
            generation = self._generations.get(camera.id, 0)
            try:
                session = await self._launch(camera)
            except ConfigurationMissing as exc:
                logger.debug("Not recording %s: %s", camera.name, exc)
                return False
            except FolderCreateFailed as exc:
                logger.warning("Unable to record %s: %s", camera.name, exc)
                self._record("folder_create_failed", str(exc), camera.id)
                return False
            except ProcessSpawnFailed as exc:
                logger.warning("Unable to record %s: %s", camera.name, exc)
                self._record("spawn_failed", str(exc), camera.id)
                return False
            if self._closed or self._generations.get(camera.id, 0) != generation:
                logger.info("Stop requested for %s while ffmpeg was launching", camera.name)
                self._stopping.add(session)
                self._terminate(session)
                self._watch(session)
                return False
            self._registry.set(session)
            self._watch(session)
        logger.info("Recording %s into %s (pid %s)", camera.name, session.folder, session.pid)
        self._record(
            "recording_started",
            f"Recording started for {camera.name}",
            camera.id,
            pid=session.pid,
            folder=str(session.folder),
        )
        return True

    def stop(self, camera_id: str) -> RecordingSession | None:
        """Stop the session of ``camera_id`` without waiting for the exit.

        The registry entry is removed at once so a following start never sees
        the old handle; the exit of the signalled process is ignored later.
        """

        self._generations[camera_id] = self._generations.get(camera_id, 0) + 1
        self.cancel_restart(camera_id)
        session = self._registry.remove(camera_id)
        if session is None:
            return None
        self._stopping.add(session)
        self._terminate(session)
        logger.info("Stopped recording %s (pid %s)", session.camera_name, session.pid)
        self._record(
            "recording_stopped",
            f"Recording stopped for {session.camera_name}",
            camera_id,
            pid=session.pid,
        )
        return session

    def forget(self, camera_id: str) -> RecordingSession | None:
        """Stop ``camera_id`` and drop its bookkeeping after the camera was deleted.

        A start that currently holds the camera lock keeps its entries so the
        generation check can still discard the process it is launching.
        """

        session = self.stop(camera_id)
        lock = self._locks.get(camera_id)
        if lock is None or not lock.locked():
            self._locks.pop(camera_id, None)
            self._generations.pop(camera_id, None)
        return session

    def stop_all(self) -> list[RecordingSession]:
        stopped = []
        for camera_id in {*self._registry, *self._restarts, *self._starting}:
            session = self.stop(camera_id)
            if session is not None:
                stopped.append(session)
        return stopped

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------
    def on_exit(self, session: RecordingSession, exit_code: int | None) -> Effect:
        """Transition for a process exit; returns the side effect to perform."""

        removed = self._registry.remove(session.camera_id, session)
        if removed is None:
            return NoAction(session.camera_id, ExitOutcome.SUPERSEDED, exit_code)
        settings = self._settings()
        uptime = self._clock() - session.started_at
        outcome = classify_exit(exit_code, uptime, min_uptime_s=settings.min_uptime_s)
        if outcome.restart:
            return ScheduleRestart(session.camera_id, settings.restart_delay_s, outcome, exit_code)
        return NoAction(session.camera_id, outcome, exit_code)

    def apply_effect(self, effect: Effect) -> None:
        if isinstance(effect, ScheduleRestart):
            logger.info(
                "Recorder for %s exited (%s, code %s); restarting in %.0fs",
                effect.camera_id,
                effect.outcome.value,
                effect.exit_code,
                effect.delay_s,
            )
            self.schedule_restart(effect.camera_id, effect.delay_s)
            self._record(
                "restart_scheduled",
                f"Restart scheduled in {effect.delay_s:g}s",
                effect.camera_id,
                outcome=effect.outcome.value,
                exit_code=effect.exit_code,
            )
            return
        if effect.outcome is ExitOutcome.SUPERSEDED:
            logger.debug("Ignoring exit of replaced recorder for %s", effect.camera_id)
            return
        logger.warning(
            "Recorder for %s exited immediately with code %s; not restarting",
            effect.camera_id,
            effect.exit_code,
        )
        self._record(
            "process_exited",
            "Recorder exited immediately; automatic restart suppressed",
            effect.camera_id,
            outcome=effect.outcome.value,
            exit_code=effect.exit_code,
        )

    # ------------------------------------------------------------------
    # Restart scheduling
    # ------------------------------------------------------------------
    def schedule_restart(self, camera_id: str, delay_s: float) -> None:
        if self._closed:
            return
        self.cancel_restart(camera_id)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay_s, self._fire_restart, camera_id)
        due = datetime.now(timezone.utc) + timedelta(seconds=delay_s)
        self._restarts[camera_id] = PendingRestart(handle=handle, due_wall=due)

    def cancel_restart(self, camera_id: str) -> bool:
        pending = self._restarts.pop(camera_id, None)
        if pending is None:
            return False
        pending.handle.cancel()
        return True

    def _fire_restart(self, camera_id: str) -> None:
        self._restarts.pop(camera_id, None)
        self._spawn_task(self.resume(camera_id))

    async def resume(self, camera_id: str) -> bool:
        """Restart ``camera_id`` from its current record, if it still exists."""

        camera = self._cameras.get(camera_id)
        if camera is None:
            logger.info("Skipping restart of deleted camera %s", camera_id)
            self._record("restart_skipped", "Camera no longer exists", camera_id)
            return False
        try:
            return await self.start(camera)
        except Exception:  # pragma: no cover - logged and skipped
            logger.exception("Unexpected error restarting recorder for %s", camera.name)
            return False

    # ------------------------------------------------------------------
    # Initialisation and shutdown
    # ------------------------------------------------------------------
    async def initialise(self, *, delay_s: float | None = None) -> int:
        """Issue a start request for every camera; return the number started."""

        delay = self._settings().settle_delay_s if delay_s is None else delay_s
        if delay > 0:
            await asyncio.sleep(delay)
        if not self.ffmpeg_available:
            logger.warning("ffmpeg not found; continuous recording disabled")
            return 0
        cameras = list(self._cameras.list())
        logger.info("Initialising recorders for %d cameras", len(cameras))
        started = 0
        for camera in cameras:
            try:
                if await self.start(camera):
                    started += 1
            except Exception:  # pragma: no cover - logged and skipped
                logger.exception("Unexpected error starting recorder for %s", camera.name)
        return started

    def schedule_initialise(self) -> asyncio.Task:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._init_task = asyncio.get_running_loop().create_task(self.initialise())
        return self._init_task

    async def reinitialise(self) -> int:
        """Stop every session and start again, e.g. after the root changed."""

        self.stop_all()
        return await self.initialise(delay_s=0)

    async def aclose(self, timeout: float = 5.0) -> None:
        self._closed = True
        if self._init_task is not None:
            self._init_task.cancel()
            self._init_task = None
        for camera_id in list(self._restarts):
            self.cancel_restart(camera_id)
        self.stop_all()
        for session in list(self._stopping):
            await self._reap(session, timeout)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _launch(self, camera: CameraRecord) -> RecordingSession:
        root = self._destination()
        if not root:
            raise ConfigurationMissing("recording path is not configured")
        if not camera.status.recordable:
            raise ConfigurationMissing(f"status is {camera.status.value}")
        source = resolve_stream_url(camera)
        if source is None:
            raise ConfigurationMissing("no stream address")
        if not self._binary:
            raise ProcessSpawnFailed("ffmpeg is not installed")
        folder = Path(root) / folder_token(camera.name)
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FolderCreateFailed(f"cannot create {folder}: {exc}") from exc
        command = build_record_command(
            self._binary,
            source,
            folder,
            segment_seconds=self._settings().segment_seconds,
        )
        logger.debug("Launching recorder for %s from %s", camera.name, redact_url(source))
        self._starting.add(camera.id)
        try:
            process = await self._launcher(command)
        except (OSError, ValueError) as exc:
            raise ProcessSpawnFailed(f"cannot launch ffmpeg: {exc}") from exc
        finally:
            self._starting.discard(camera.id)
        return RecordingSession(
            camera_id=camera.id,
            camera_name=camera.name,
            process=process,
            started_at=self._clock(),
            started_wall=datetime.now(timezone.utc),
            folder=folder,
        )

    def _watch(self, session: RecordingSession) -> None:
        self._spawn_task(self._wait_for_exit(session))

    async def _wait_for_exit(self, session: RecordingSession) -> None:
        tail = await self._drain_stderr(session)
        exit_code = await session.process.wait()
        self._stopping.discard(session)
        effect = self.on_exit(session, exit_code)
        if tail and effect.outcome is not ExitOutcome.SUPERSEDED:
            logger.warning("ffmpeg output for %s: %s", session.camera_name, " | ".join(tail))
        self.apply_effect(effect)

    @staticmethod
    async def _drain_stderr(session: RecordingSession) -> list[str]:
        stream = getattr(session.process, "stderr", None)
        if stream is None:
            return []
        tail: deque[str] = deque(maxlen=5)
        async for raw in stream:
            line = raw.decode("utf-8", "replace").strip()
            if line:
                tail.append(line)
        return list(tail)

    @staticmethod
    def _terminate(session: RecordingSession) -> None:
        try:
            session.process.terminate()
        except OSError as exc:
            logger.debug("Recorder for %s already gone: %s", session.camera_name, exc)

    async def _reap(self, session: RecordingSession, timeout: float) -> None:
        try:
            await asyncio.wait_for(session.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Recorder for %s ignored SIGTERM; killing", session.camera_name)
            try:
                session.process.kill()
            except OSError:
                return
            await session.process.wait()
        finally:
            self._stopping.discard(session)

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _record(self, event: str, message: str, camera_id: str, **metadata: object) -> None:
        if self._events is None:
            return
        self._events.record(event, message, camera_id=camera_id, metadata=metadata)


__all__ = [
    "CameraSource",
    "ConfigurationMissing",
    "Effect",
    "ExitOutcome",
    "FolderCreateFailed",
    "NoAction",
    "ProcessSpawnFailed",
    "RecordingError",
    "RecordingSupervisor",
    "ScheduleRestart",
    "SessionState",
    "classify_exit",
]
