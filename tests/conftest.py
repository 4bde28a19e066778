"""Shared fakes standing in for ffmpeg processes."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Callable

import pytest

_PIDS = itertools.count(4000)


class FakeStream:
    """Minimal ``StreamReader`` replacement serving pre-recorded chunks."""

    def __init__(self, chunks: list[bytes] | None = None, *, hang: bool = False) -> None:
        self._chunks = list(chunks or [])
        self._hang = hang

    async def read(self, n: int = -1) -> bytes:
        if self._hang:
            await asyncio.Event().wait()
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


class FakeProcess:
    """Process double whose exit is driven by the test."""

    def __init__(
        self,
        *,
        stdout: FakeStream | None = None,
        exit_on_terminate: bool = True,
        returncode: int | None = None,
    ) -> None:
        self.pid = next(_PIDS)
        self.returncode: int | None = None
        self.stdout = stdout
        self.stderr = None
        self.terminated = False
        self.killed = False
        self._exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()
        if returncode is not None:
            self.exit(returncode)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if self._exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    """Records every command and hands out :class:`FakeProcess` objects."""

    def __init__(self, factory: Callable[[list[str]], FakeProcess] | None = None) -> None:
        self.calls: list[tuple[list[str], dict]] = []
        self.processes: list[FakeProcess] = []
        self._factory = factory or (lambda command: FakeProcess())

    @property
    def commands(self) -> list[list[str]]:
        return [command for command, _ in self.calls]

    async def __call__(self, command, **kwargs) -> FakeProcess:
        command = list(command)
        self.calls.append((command, kwargs))
        process = self._factory(command)
        self.processes.append(process)
        return process


def thumbnail_writer(command: list[str]) -> FakeProcess:
    Path(command[-1]).write_bytes(b"\xff\xd8thumb")
    return FakeProcess(returncode=0)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()
