from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol

from .types import OutputChunk

logger = logging.getLogger(__name__)


def _utf8_boundary(data: bytes | bytearray) -> int:
    """Return the length of `data` without a trailing incomplete UTF-8 sequence.

    Example:
        ```python
        assert _utf8_boundary("ab✓".encode()[:4]) == 2
        ```
    """
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte >= 0xF0:
            needed = 4
        elif byte >= 0xE0:
            needed = 3
        elif byte >= 0xC0:
            needed = 2
        else:
            needed = 1
        return len(data) - back if needed > back else len(data)
    return len(data)


class OutputSink(Protocol):
    truncated: bool

    async def send(self, chunk: OutputChunk) -> None:
        """Deliver one decoded chunk to the caller.

        Implementations raise ClientDisconnected when the caller is gone.

        Example:
            ```python
            await sink.send(OutputChunk(StreamKind.STDOUT, b"1\\n", 1))
            ```
        """
        ...

    def output(self) -> str:
        """Return output still held by the sink for the final result.

        Example:
            ```python
            text = sink.output()
            ```
        """
        ...


class CollectingSink:
    """Synchronous-mode sink: interleave every chunk into one buffer.

    Chunks are appended in arrival order regardless of stream. Past
    `max_bytes` further output is dropped and `truncated` is set.

    Example:
        ```python
        sink = CollectingSink(max_bytes=64 * 1024)
        ```
    """

    def __init__(self, *, max_bytes: int | None = None) -> None:
        """Create an empty buffer with an optional size cap.

        Example:
            ```python
            sink = CollectingSink()
            ```
        """
        self._buffer = bytearray()
        self._max_bytes = max_bytes
        self.truncated = False

    async def send(self, chunk: OutputChunk) -> None:
        """Append a chunk unless the cap has been reached.

        The cut at the cap falls on a character boundary.

        Example:
            ```python
            await sink.send(chunk)
            ```
        """
        if self.truncated:
            return
        room = None if self._max_bytes is None else self._max_bytes - len(self._buffer)
        if room is None or len(chunk.data) <= room:
            self._buffer.extend(chunk.data)
            return
        self._buffer.extend(chunk.data[:room])
        del self._buffer[_utf8_boundary(self._buffer) :]
        self.truncated = True
        logger.warning("Output exceeded %d bytes; truncating", self._max_bytes)

    def output(self) -> str:
        """Return everything collected so far as text.

        Example:
            ```python
            text = sink.output()
            ```
        """
        return self._buffer.decode("utf-8", errors="replace")


class CallbackSink:
    """Streaming-mode sink: hand each chunk to an async callback immediately.

    Example:
        ```python
        sink = CallbackSink(websocket_sender)
        ```
    """

    def __init__(self, callback: Callable[[OutputChunk], Awaitable[None]]) -> None:
        """Wrap the per-chunk callback.

        Example:
            ```python
            sink = CallbackSink(lambda chunk: queue.put(chunk))
            ```
        """
        self._callback = callback
        self.truncated = False

    async def send(self, chunk: OutputChunk) -> None:
        """Forward one chunk without buffering it.

        Example:
            ```python
            await sink.send(chunk)
            ```
        """
        await self._callback(chunk)

    def output(self) -> str:
        """Everything was already forwarded, so nothing is left for the result.

        Example:
            ```python
            assert sink.output() == ""
            ```
        """
        return ""
