from __future__ import annotations

import asyncio
import struct
from typing import AsyncIterator, Sequence

import pytest

from snippet_runner import RunnerSettings
from snippet_runner.execution import ContainerInfo, ContainerSpec

CONTAINER_ID = "c0ffee1234567890"


def frame(stream: int, data: bytes) -> bytes:
    return struct.pack(">B3sI", stream, b"\x00\x00\x00", len(data)) + data


class FakeRuntime:
    """In-memory stand-in for DockerRuntimeClient that records every call."""

    def __init__(
        self,
        *,
        frames: Sequence[bytes] = (),
        exit_code: int = 0,
        hang: bool = False,
        create_delay: float = 0.0,
        copy_delay: float = 0.0,
        create_error: Exception | None = None,
        copy_error: Exception | None = None,
        start_error: Exception | None = None,
        log_error: Exception | None = None,
        wait_error: Exception | None = None,
        remove_error: Exception | None = None,
        ping_result: tuple[bool, str | None] = (True, None),
        containers: Sequence[ContainerInfo] = (),
    ) -> None:
        self.frames = list(frames)
        self.exit_code = exit_code
        self.hang = hang
        self.create_delay = create_delay
        self.copy_delay = copy_delay
        self.create_error = create_error
        self.copy_error = copy_error
        self.start_error = start_error
        self.log_error = log_error
        self.wait_error = wait_error
        self.remove_error = remove_error
        self.ping_result = ping_result
        self.containers = list(containers)
        self.calls: list[str] = []
        self.specs: list[ContainerSpec] = []
        self.archives: list[tuple[str, bytes]] = []
        self.removed: list[tuple[str, bool]] = []
        self.closed = False

    async def __aenter__(self) -> "FakeRuntime":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    async def ping(self) -> tuple[bool, str | None]:
        return self.ping_result

    async def create_container(self, spec: ContainerSpec) -> str:
        self.calls.append("create")
        self.specs.append(spec)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        return CONTAINER_ID

    async def copy_archive(self, container_id: str, path: str, archive: bytes) -> None:
        self.calls.append("copy")
        if self.copy_delay:
            await asyncio.sleep(self.copy_delay)
        if self.copy_error is not None:
            raise self.copy_error
        self.archives.append((path, archive))

    async def start_container(self, container_id: str) -> None:
        self.calls.append("start")
        if self.start_error is not None:
            raise self.start_error

    async def stream_logs(self, container_id: str, *, follow: bool = True) -> AsyncIterator[bytes]:
        self.calls.append("logs")
        for data in self.frames:
            yield data
        if self.log_error is not None:
            raise self.log_error
        if self.hang:
            await asyncio.Event().wait()

    async def wait_container(self, container_id: str) -> int:
        self.calls.append("wait")
        if self.wait_error is not None:
            raise self.wait_error
        if self.hang:
            await asyncio.Event().wait()
        return self.exit_code

    async def remove_container(self, container_id: str, *, force: bool = True) -> None:
        self.calls.append("remove")
        self.removed.append((container_id, force))
        if self.remove_error is not None:
            raise self.remove_error

    async def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        return list(self.containers)


@pytest.fixture
def fast_settings() -> RunnerSettings:
    return RunnerSettings(timeout_seconds=2, cleanup_timeout_seconds=1)
