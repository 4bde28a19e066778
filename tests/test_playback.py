from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from cam_home import playback
from cam_home.playback import (
    ThumbnailCache,
    ThumbnailError,
    list_segments,
    parse_segment_time,
    probe_segment,
    resolve_segment,
    segment_filename,
    storage_status,
)

from conftest import FakeLauncher, FakeProcess, thumbnail_writer


def _write_segment(root: Path, camera: str, name: str, size: int = 2048) -> Path:
    folder = root / camera
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / name
    path.write_bytes(b"\0" * size)
    return path


def test_segment_names_sort_chronologically() -> None:
    base = datetime(2024, 1, 9, 23, 59, 50)
    moments = [base + timedelta(seconds=offset) for offset in (0, 5, 15, 3600, 86400 * 40)]
    names = [segment_filename(moment) for moment in moments]
    assert sorted(names) == names
    assert names[0] == "2024-01-09_23-59-50.mp4"
    assert parse_segment_time(names[0]) == base
    assert parse_segment_time("clip.mp4") is None


def test_list_segments_newest_first(tmp_path: Path) -> None:
    _write_segment(tmp_path, "front_door", "2024-03-01_10-00-00.mp4")
    _write_segment(tmp_path, "front_door", "2024-03-01_10-10-00.mp4")
    _write_segment(tmp_path, "garage", "2024-03-01_10-05-00.mp4", size=3 * 1024 * 1024)
    (tmp_path / "garage" / "2024-03-01_10-05-00.mp4.jpg").write_bytes(b"jpg")
    (tmp_path / "stray.mp4").write_bytes(b"")

    segments = list_segments(tmp_path)
    assert [(item.camera_token, item.filename) for item in segments] == [
        ("front_door", "2024-03-01_10-10-00.mp4"),
        ("garage", "2024-03-01_10-05-00.mp4"),
        ("front_door", "2024-03-01_10-00-00.mp4"),
    ]
    payload = segments[1].to_dict()
    assert payload["cameraName"] == "GARAGE"
    assert payload["videoUrl"] == "/api/playback/garage/2024-03-01_10-05-00.mp4"
    assert payload["thumbnailUrl"] == "/api/playback/garage/2024-03-01_10-05-00.mp4/thumb"
    assert payload["size"] == "3.0 MB"
    assert payload["timestamp"] == "2024-03-01T10:05:00"


def test_list_segments_falls_back_to_mtime(tmp_path: Path) -> None:
    path = _write_segment(tmp_path, "porch", "clip.mp4")
    stamp = datetime(2023, 6, 1, 12, 0, 0).timestamp()
    os.utime(path, (stamp, stamp))
    (segment,) = list_segments(tmp_path)
    assert segment.recorded_at == datetime(2023, 6, 1, 12, 0, 0)


def test_list_segments_without_root(tmp_path: Path) -> None:
    assert list_segments(None) == []
    assert list_segments(tmp_path / "missing") == []


def test_resolve_segment_maps_camera_name(tmp_path: Path) -> None:
    path = _write_segment(tmp_path, "front_door__", "2024-03-01_10-00-00.mp4")
    assert resolve_segment(tmp_path, "Front Door!!", "2024-03-01_10-00-00.mp4") == path.resolve()


@pytest.mark.parametrize(
    "camera, filename",
    [
        ("front_door", "missing.mp4"),
        ("..", "config.json"),
        ("front_door", "../../config.json"),
        ("front_door", ".."),
    ],
)
def test_resolve_segment_rejects_unknown_paths(tmp_path: Path, camera: str, filename: str) -> None:
    root = tmp_path / "recordings"
    _write_segment(root, "front_door", "2024-03-01_10-00-00.mp4")
    (tmp_path / "config.json").write_text("{}")
    with pytest.raises(FileNotFoundError):
        resolve_segment(root, camera, filename)


def test_resolve_segment_requires_root() -> None:
    with pytest.raises(FileNotFoundError):
        resolve_segment(None, "front_door", "a.mp4")


def test_probe_segment_tolerates_invalid_files(tmp_path: Path) -> None:
    path = _write_segment(tmp_path, "porch", "broken.mp4", size=16)
    details = probe_segment(path)
    assert details == {"duration_s": None, "codec": None, "width": None, "height": None}


def test_storage_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    usage = type("Usage", (), {"total": 1000, "used": 750, "free": 250})()
    monkeypatch.setattr(playback.shutil, "disk_usage", lambda path: usage)
    status = storage_status(tmp_path)
    assert status["available"] is True
    assert status["free_bytes"] == 250
    assert status["free_percent"] == 25.0
    assert storage_status(None) == {"path": None, "available": False}


def test_thumbnail_generated_once(tmp_path: Path) -> None:
    segment = _write_segment(tmp_path, "porch", "2024-03-01_10-00-00.mp4")
    launcher = FakeLauncher(thumbnail_writer)
    cache = ThumbnailCache(ffmpeg_binary="ffmpeg", launcher=launcher)

    async def scenario() -> list[Path]:
        return await asyncio.gather(cache.get(segment), cache.get(segment))

    first, second = asyncio.run(scenario())
    assert first == second == segment.with_name(segment.name + ".jpg")
    assert first.read_bytes() == b"\xff\xd8thumb"
    assert len(launcher.calls) == 1
    command = launcher.commands[0]
    assert command[command.index("-ss") + 1] == "00:00:01"
    assert command[command.index("-i") + 1] == str(segment)

    asyncio.run(cache.get(segment))
    assert len(launcher.calls) == 1


def test_thumbnail_failure(tmp_path: Path) -> None:
    segment = _write_segment(tmp_path, "porch", "2024-03-01_10-00-00.mp4")
    launcher = FakeLauncher(lambda command: FakeProcess(returncode=1))
    cache = ThumbnailCache(ffmpeg_binary="ffmpeg", launcher=launcher)
    with pytest.raises(ThumbnailError):
        asyncio.run(cache.get(segment))
    with pytest.raises(ThumbnailError):
        asyncio.run(ThumbnailCache(ffmpeg_binary=None).get(segment))


def test_thumbnail_timeout_kills_process(tmp_path: Path) -> None:
    segment = _write_segment(tmp_path, "porch", "2024-03-01_10-00-00.mp4")
    launcher = FakeLauncher()
    cache = ThumbnailCache(ffmpeg_binary="ffmpeg", launcher=launcher, timeout_s=0.05)
    with pytest.raises(ThumbnailError):
        asyncio.run(cache.get(segment))
    assert launcher.processes[0].killed is True


def test_failed_thumbnail_leaves_no_partial_file(tmp_path: Path) -> None:
    segment = _write_segment(tmp_path, "porch", "2024-03-01_10-00-00.mp4")
    attempts: list[int] = []

    def flaky_writer(command: list[str]) -> FakeProcess:
        attempts.append(len(attempts))
        if len(attempts) == 1:
            Path(command[-1]).write_bytes(b"\xff\xd8partial")
            return FakeProcess(returncode=1)
        return thumbnail_writer(command)

    launcher = FakeLauncher(flaky_writer)
    cache = ThumbnailCache(ffmpeg_binary="ffmpeg", launcher=launcher)
    thumbnail = ThumbnailCache.thumbnail_path(segment)

    with pytest.raises(ThumbnailError):
        asyncio.run(cache.get(segment))
    assert not thumbnail.exists()

    assert asyncio.run(cache.get(segment)).read_bytes() == b"\xff\xd8thumb"
    assert len(launcher.calls) == 2


def test_timed_out_thumbnail_is_removed(tmp_path: Path) -> None:
    segment = _write_segment(tmp_path, "porch", "2024-03-01_10-00-00.mp4")

    def stalled_writer(command: list[str]) -> FakeProcess:
        Path(command[-1]).write_bytes(b"\xff\xd8partial")
        return FakeProcess()

    cache = ThumbnailCache(
        ffmpeg_binary="ffmpeg", launcher=FakeLauncher(stalled_writer), timeout_s=0.05
    )
    with pytest.raises(ThumbnailError):
        asyncio.run(cache.get(segment))
    assert not ThumbnailCache.thumbnail_path(segment).exists()


def test_thumbnail_locks_are_released(tmp_path: Path) -> None:
    segments = [
        _write_segment(tmp_path, "porch", f"2024-03-01_10-0{index}-00.mp4") for index in range(3)
    ]
    cache = ThumbnailCache(ffmpeg_binary="ffmpeg", launcher=FakeLauncher(thumbnail_writer))

    async def scenario() -> None:
        await asyncio.gather(*(cache.get(segment) for segment in segments * 2))

    asyncio.run(scenario())
    assert cache._locks == {}
    assert cache._waiting == {}

    failing = ThumbnailCache(
        ffmpeg_binary="ffmpeg", launcher=FakeLauncher(lambda command: FakeProcess(returncode=1))
    )
    with pytest.raises(ThumbnailError):
        asyncio.run(failing.get(_write_segment(tmp_path, "yard", "2024-03-01_11-00-00.mp4")))
    assert failing._locks == {}
