"""Access to recorded segments, their thumbnails and the storage volume."""
from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import av
from av.error import FFmpegError

from .ffmpeg import (
    ProcessLauncher,
    SEGMENT_EXTENSION,
    SEGMENT_TIME_FORMAT,
    build_thumbnail_command,
    spawn_process,
)
from .stream_address import folder_token

logger = logging.getLogger(__name__)

THUMBNAIL_SUFFIX = ".jpg"


class ThumbnailError(RuntimeError):
    """Raised when a segment thumbnail could not be produced."""


def segment_filename(moment: datetime) -> str:
    """Return the file name ffmpeg writes for a segment opened at ``moment``."""

    return moment.strftime(SEGMENT_TIME_FORMAT) + SEGMENT_EXTENSION


def parse_segment_time(filename: str) -> datetime | None:
    stem = filename[: -len(SEGMENT_EXTENSION)] if filename.endswith(SEGMENT_EXTENSION) else filename
    try:
        return datetime.strptime(stem, SEGMENT_TIME_FORMAT)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class SegmentInfo:
    camera_token: str
    filename: str
    size_bytes: int
    recorded_at: datetime

    @property
    def camera_name(self) -> str:
        return self.camera_token.replace("_", " ").upper()

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.filename,
            "cameraId": self.camera_token,
            "cameraName": self.camera_name,
            "timestamp": self.recorded_at.isoformat(),
            "videoUrl": f"/api/playback/{self.camera_token}/{self.filename}",
            "thumbnailUrl": f"/api/playback/{self.camera_token}/{self.filename}/thumb",
            "type": "video",
            "size_bytes": self.size_bytes,
            "size": f"{self.size_bytes / (1024 * 1024):.1f} MB",
        }


def _segment_info(camera_token: str, path: Path) -> SegmentInfo | None:
    try:
        stat = path.stat()
    except OSError:
        return None
    recorded_at = parse_segment_time(path.name)
    if recorded_at is None:
        recorded_at = datetime.fromtimestamp(stat.st_mtime)
    return SegmentInfo(
        camera_token=camera_token,
        filename=path.name,
        size_bytes=int(stat.st_size),
        recorded_at=recorded_at,
    )


def list_segments(root: Path | str | None) -> list[SegmentInfo]:
    """Return every recorded segment under ``root``, newest first."""

    if not root:
        return []
    base = Path(root)
    if not base.is_dir():
        return []
    segments: list[SegmentInfo] = []
    for folder in sorted(base.iterdir()):
        if not folder.is_dir():
            continue
        for path in sorted(folder.glob(f"*{SEGMENT_EXTENSION}")):
            info = _segment_info(folder.name, path)
            if info is not None:
                segments.append(info)
    segments.sort(
        key=lambda item: (item.recorded_at, item.filename),
        reverse=True,
    )
    return segments


def resolve_segment(root: Path | str | None, camera: str, filename: str) -> Path:
    """Map a playback request onto a file inside ``root``.

    Raises :class:`FileNotFoundError` for unknown segments or paths escaping
    the recording root.
    """

    if not root:
        raise FileNotFoundError("Recording path is not configured")
    base = Path(root).resolve()
    name = Path(filename).name
    if not name or name in (".", ".."):
        raise FileNotFoundError(filename)
    path = (base / folder_token(camera) / name).resolve()
    if base not in path.parents:
        raise FileNotFoundError(filename)
    if not path.is_file():
        raise FileNotFoundError(str(path))
    return path


def probe_segment(path: Path) -> dict[str, object]:
    """Read duration and codec details from a finished segment."""

    details: dict[str, object] = {"duration_s": None, "codec": None, "width": None, "height": None}
    try:
        with av.open(str(path)) as container:
            if container.duration is not None:
                details["duration_s"] = round(container.duration / av.time_base, 3)
            video = next(iter(container.streams.video), None)
            if video is not None:
                details["codec"] = video.codec_context.name
                details["width"] = video.codec_context.width
                details["height"] = video.codec_context.height
    except (FFmpegError, OSError) as exc:
        logger.debug("Unable to probe %s: %s", path, exc)
    return details


def storage_status(root: Path | str | None) -> dict[str, object]:
    if not root:
        return {"path": None, "available": False}
    base = Path(root)
    try:
        usage = shutil.disk_usage(base if base.exists() else base.parent)
    except OSError as exc:
        logger.warning("Unable to read disk usage for %s: %s", base, exc)
        return {"path": str(base), "available": False}
    total = int(usage.total)
    free = int(usage.free)
    used = int(usage.used)
    free_percent = 100.0 if total <= 0 else max(0.0, min(100.0, (free / total) * 100.0))
    return {
        "path": str(base),
        "available": base.exists(),
        "total_bytes": total,
        "used_bytes": used,
        "free_bytes": free,
        "free_percent": round(free_percent, 3),
    }


class ThumbnailCache:
    """Generate segment thumbnails on first request and keep them on disk."""

    def __init__(
        self,
        *,
        ffmpeg_binary: str | None = "ffmpeg",
        launcher: ProcessLauncher = spawn_process,
        timeout_s: float = 20.0,
    ) -> None:
        self._binary = ffmpeg_binary
        self._launcher = launcher
        self._timeout = float(timeout_s)
        self._locks: dict[Path, asyncio.Lock] = {}
        self._waiting: dict[Path, int] = {}

    @staticmethod
    def thumbnail_path(segment: Path) -> Path:
        return segment.with_name(segment.name + THUMBNAIL_SUFFIX)

    async def get(self, segment: Path) -> Path:
        thumbnail = self.thumbnail_path(segment)
        if thumbnail.exists():
            return thumbnail
        lock = self._locks.setdefault(segment, asyncio.Lock())
        self._waiting[segment] = self._waiting.get(segment, 0) + 1
        try:
            async with lock:
                if not thumbnail.exists():
                    await self._generate(segment, thumbnail)
        finally:
            self._waiting[segment] -= 1
            if not self._waiting[segment]:
                del self._waiting[segment]
                del self._locks[segment]
        return thumbnail

    async def _generate(self, segment: Path, thumbnail: Path) -> None:
        if not self._binary:
            raise ThumbnailError("ffmpeg is not installed")
        command = build_thumbnail_command(self._binary, segment, thumbnail)
        try:
            process = await self._launcher(command, stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise ThumbnailError(f"cannot launch ffmpeg: {exc}") from exc
        try:
            code = await asyncio.wait_for(process.wait(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            thumbnail.unlink(missing_ok=True)
            raise ThumbnailError("thumbnail generation timed out") from exc
        if code != 0 or not thumbnail.exists():
            # A partial image would otherwise be served as the cached thumbnail.
            thumbnail.unlink(missing_ok=True)
            raise ThumbnailError(f"ffmpeg exited with code {code}")
        logger.debug("Generated thumbnail %s", thumbnail)


__all__ = [
    "SegmentInfo",
    "ThumbnailCache",
    "ThumbnailError",
    "list_segments",
    "parse_segment_time",
    "probe_segment",
    "resolve_segment",
    "segment_filename",
    "storage_status",
]
