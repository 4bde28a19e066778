"""ffmpeg command lines and process launching."""
from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .registry import ProcessHandle

# Filenames embed a zero padded timestamp so lexicographic order is chronological.
SEGMENT_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"
SEGMENT_EXTENSION = ".mp4"
SEGMENT_PATTERN = SEGMENT_TIME_FORMAT + SEGMENT_EXTENSION

CONNECT_TIMEOUT_US = 5_000_000
THUMBNAIL_OFFSET = "00:00:01"
RTSP_SNAPSHOT_SIZE = "640x360"
RTSP_SNAPSHOT_QUALITY = 15

ProcessLauncher = Callable[..., Awaitable[ProcessHandle]]


def locate_ffmpeg(binary: str = "ffmpeg") -> str | None:
    """Return the absolute path of ``binary`` when it is installed."""

    return shutil.which(binary)


def build_record_command(
    binary: str,
    source_url: str,
    folder: Path,
    *,
    segment_seconds: int = 600,
) -> list[str]:
    """Command recording ``source_url`` into ``folder`` as timestamped segments."""

    return [
        binary,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-y",
        "-rtsp_transport",
        "tcp",
        "-i",
        source_url,
        "-c",
        "copy",
        "-map",
        "0",
        "-f",
        "segment",
        "-segment_time",
        str(int(segment_seconds)),
        "-segment_format",
        "mp4",
        "-strftime",
        "1",
        "-reset_timestamps",
        "1",
        str(folder / SEGMENT_PATTERN),
    ]


def build_rtsp_snapshot_command(
    binary: str,
    source_url: str,
    *,
    size: str | None = RTSP_SNAPSHOT_SIZE,
    quality: int | None = RTSP_SNAPSHOT_QUALITY,
) -> list[str]:
    """Command grabbing one JPEG frame from an RTSP source onto stdout."""

    command = [
        binary,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-y",
        "-timeout",
        str(CONNECT_TIMEOUT_US),
        "-rtsp_transport",
        "tcp",
        "-i",
        source_url,
        "-frames:v",
        "1",
    ]
    if size:
        command.extend(["-s", size])
    if quality is not None:
        command.extend(["-q:v", str(int(quality))])
    command.extend(["-f", "image2", "-c:v", "mjpeg", "-update", "1", "-"])
    return command


def build_http_snapshot_command(binary: str, source_url: str) -> list[str]:
    """Command fetching one frame from an HTTP camera onto stdout."""

    return [
        binary,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-y",
        "-rw_timeout",
        str(CONNECT_TIMEOUT_US),
        "-i",
        source_url,
        "-frames:v",
        "1",
        "-f",
        "image2",
        "-c:v",
        "mjpeg",
        "-update",
        "1",
        "-",
    ]


def build_thumbnail_command(binary: str, video: Path, thumbnail: Path) -> list[str]:
    """Command extracting the frame one second into ``video``."""

    return [
        binary,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-y",
        "-ss",
        THUMBNAIL_OFFSET,
        "-i",
        str(video),
        "-frames:v",
        "1",
        str(thumbnail),
    ]


async def spawn_process(
    command: Sequence[str],
    *,
    stdout: int | None = subprocess.DEVNULL,
    stderr: int | None = subprocess.PIPE,
) -> ProcessHandle:
    """Launch ``command`` without blocking the event loop."""

    return await asyncio.create_subprocess_exec(
        *command,
        stdin=subprocess.DEVNULL,
        stdout=stdout,
        stderr=stderr,
    )


__all__ = [
    "CONNECT_TIMEOUT_US",
    "ProcessLauncher",
    "RTSP_SNAPSHOT_SIZE",
    "SEGMENT_EXTENSION",
    "SEGMENT_PATTERN",
    "SEGMENT_TIME_FORMAT",
    "build_http_snapshot_command",
    "build_record_command",
    "build_rtsp_snapshot_command",
    "build_thumbnail_command",
    "locate_ffmpeg",
    "spawn_process",
]
