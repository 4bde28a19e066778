"""Single-frame acquisition for live-view tiles."""
from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator
from urllib.parse import urlsplit

import httpx

from .ffmpeg import (
    ProcessLauncher,
    build_http_snapshot_command,
    build_rtsp_snapshot_command,
    spawn_process,
)
from .stream_address import embed_credentials, redact_url

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "image/jpeg"


class LiveViewError(RuntimeError):
    """Base class for live frame failures."""


class FrameServiceUnavailable(LiveViewError):
    """Raised when no acquisition path is available at all."""


class FrameAcquisitionError(LiveViewError):
    """Raised when the capture process produced no image."""


class DirectFetchError(LiveViewError):
    """Raised when the direct HTTP request fails; only triggers the fallback."""


class SourceKind(str, Enum):
    HTTP = "http"
    RTSP = "rtsp"


def classify_source(url: str, transport: str | None = None) -> SourceKind:
    hint = (transport or "").strip().lower()
    if hint in ("rtsp", "rtsps"):
        return SourceKind.RTSP
    if hint in ("http", "https"):
        return SourceKind.HTTP
    scheme = urlsplit(url).scheme.lower()
    if scheme in ("rtsp", "rtsps"):
        return SourceKind.RTSP
    if scheme in ("http", "https"):
        return SourceKind.HTTP
    raise ValueError(f"Unsupported stream scheme {scheme or url!r}")


@dataclass(slots=True)
class Frame:
    """One live image, either buffered or streamed from ffmpeg."""

    media_type: str
    source: str
    content: bytes | None = None
    chunks: AsyncIterator[bytes] | None = None

    async def read(self) -> bytes:
        if self.content is not None:
            return self.content
        parts = []
        if self.chunks is not None:
            async for chunk in self.chunks:
                parts.append(chunk)
        return b"".join(parts)


class FrameGateway:
    """Fetch live frames directly, falling back to ffmpeg for awkward cameras."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        ffmpeg_binary: str | None = "ffmpeg",
        launcher: ProcessLauncher = spawn_process,
        direct_timeout_s: float = 3.0,
        first_chunk_timeout_s: float = 10.0,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=direct_timeout_s, follow_redirects=True
        )
        self._binary = ffmpeg_binary
        self._launcher = launcher
        self._direct_timeout = float(direct_timeout_s)
        self._first_chunk_timeout = float(first_chunk_timeout_s)
        self._chunk_size = int(chunk_size)

    @property
    def ffmpeg_available(self) -> bool:
        return bool(self._binary)

    async def acquire_frame(
        self,
        url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        transport: str | None = None,
        size: str | None = None,
    ) -> Frame:
        if not url or not url.strip():
            raise ValueError("URL missing")
        url = url.strip()
        kind = classify_source(url, transport)
        if kind is SourceKind.RTSP:
            if not self._binary:
                raise FrameServiceUnavailable("ffmpeg is required for RTSP snapshots")
            source = embed_credentials(url, username, password)
            return await self.capture_with_ffmpeg(
                build_rtsp_snapshot_command(self._binary, source, size=size)
            )

        try:
            return await self.fetch_direct(url, username=username, password=password)
        except DirectFetchError as exc:
            logger.warning(
                "Direct fetch of %s failed (%s); attempting ffmpeg fallback",
                redact_url(url),
                exc,
            )
        if not self._binary:
            raise FrameServiceUnavailable(
                "Could not connect to camera and ffmpeg is missing"
            )
        source = embed_credentials(url, username, password)
        try:
            return await self.capture_with_ffmpeg(
                build_http_snapshot_command(self._binary, source)
            )
        except FrameAcquisitionError as exc:
            raise FrameServiceUnavailable(
                f"Could not connect to camera directly or via ffmpeg: {exc}"
            ) from exc

    async def fetch_direct(
        self,
        url: str,
        *,
        username: str | None = None,
        password: str | None = None,
    ) -> Frame:
        auth = (username, password) if username and password else None
        try:
            response = await asyncio.wait_for(
                self._client.get(url, auth=auth), timeout=self._direct_timeout
            )
        except asyncio.TimeoutError as exc:
            raise DirectFetchError(f"timed out after {self._direct_timeout:g}s") from exc
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise DirectFetchError(str(exc) or exc.__class__.__name__) from exc
        if not response.is_success:
            raise DirectFetchError(f"HTTP {response.status_code}")
        media_type = response.headers.get("content-type") or DEFAULT_MEDIA_TYPE
        return Frame(media_type=media_type, source="direct", content=response.content)

    async def capture_with_ffmpeg(self, command: list[str]) -> Frame:
        """Run ``command`` and stream its stdout once the first bytes arrive."""

        try:
            process = await self._launcher(
                command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
            )
        except FileNotFoundError as exc:
            raise FrameServiceUnavailable(f"ffmpeg unavailable: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise FrameAcquisitionError(f"cannot launch ffmpeg: {exc}") from exc
        try:
            first = await asyncio.wait_for(
                process.stdout.read(self._chunk_size), timeout=self._first_chunk_timeout
            )
        except asyncio.TimeoutError as exc:
            await self._discard(process)
            raise FrameAcquisitionError("ffmpeg produced no frame in time") from exc
        except BaseException:
            # The caller went away while ffmpeg was still connecting.
            await self._discard(process)
            raise
        if not first:
            code = await process.wait()
            raise FrameAcquisitionError(f"ffmpeg exited with code {code} without an image")
        return Frame(
            media_type=DEFAULT_MEDIA_TYPE,
            source="ffmpeg",
            chunks=self._stream(process, first),
        )

    async def _stream(self, process, first: bytes) -> AsyncIterator[bytes]:
        finished = False
        try:
            yield first
            while True:
                chunk = await process.stdout.read(self._chunk_size)
                if not chunk:
                    finished = True
                    break
                yield chunk
        finally:
            if finished:
                await process.wait()
            else:
                await self._discard(process)

    @staticmethod
    async def _discard(process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except OSError:
                pass
        await process.wait()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "DirectFetchError",
    "Frame",
    "FrameAcquisitionError",
    "FrameGateway",
    "FrameServiceUnavailable",
    "LiveViewError",
    "SourceKind",
    "classify_source",
]
