"""Helpers deriving stream addresses and on-disk names from camera records."""
from __future__ import annotations

import re
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

CREDENTIALED_SCHEMES: frozenset[str] = frozenset({"rtsp", "rtsps"})

_UNSAFE_CHARACTERS = re.compile(r"[^a-z0-9]", re.IGNORECASE)


class StreamSource(Protocol):
    """Minimal view of a camera record needed to build its stream address."""

    stream_url: str | None
    username: str | None
    password: str | None


def folder_token(name: str) -> str:
    """Return a filesystem safe token for a camera display name.

    Every character outside ``[a-z0-9]`` becomes an underscore and the
    result is lower-cased, so ``"Front Door!!"`` maps to ``"front_door__"``.
    The mapping is applied both when writing segments and when serving
    playback requests, so it must never change for a given name.
    """

    return _UNSAFE_CHARACTERS.sub("_", str(name)).lower()


def has_embedded_credentials(url: str) -> bool:
    """Return ``True`` when the authority component already carries a user."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return "@" in url
    return "@" in parts.netloc


def embed_credentials(url: str, username: str | None, password: str | None) -> str:
    """Inject ``username:password@`` into the authority of ``url``.

    Nothing is changed when either credential is missing or when the
    address already embeds credentials.
    """

    if not username or not password:
        return url
    if has_embedded_credentials(url):
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None
    userinfo = f"{quote(username, safe='')}:{quote(password, safe='')}"
    if parts is None or not parts.scheme or not parts.netloc:
        if "://" not in url:
            return url
        scheme, rest = url.split("://", 1)
        return f"{scheme}://{userinfo}@{rest}"
    netloc = f"{userinfo}@{parts.netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def resolve_stream_url(camera: StreamSource) -> str | None:
    """Return the authenticated source address for ``camera``.

    ``None`` means the camera has no usable address and must be skipped.
    Credentials are only injected for credentialed schemes such as RTSP.
    """

    raw = camera.stream_url
    if not isinstance(raw, str):
        return None
    url = raw.strip()
    if not url:
        return None
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme not in CREDENTIALED_SCHEMES:
        return url
    return embed_credentials(url, camera.username, camera.password)


def redact_url(url: str | None) -> str | None:
    """Return ``url`` with any embedded password masked for logging."""

    if not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if "@" not in parts.netloc:
        return url
    userinfo, host = parts.netloc.rsplit("@", 1)
    user = userinfo.split(":", 1)[0]
    return urlunsplit((parts.scheme, f"{user}:***@{host}", parts.path, parts.query, parts.fragment))


__all__ = [
    "CREDENTIALED_SCHEMES",
    "StreamSource",
    "embed_credentials",
    "folder_token",
    "has_embedded_credentials",
    "redact_url",
    "resolve_stream_url",
]
