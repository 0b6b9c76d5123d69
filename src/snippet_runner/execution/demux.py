from __future__ import annotations

import struct
from typing import AsyncIterable, AsyncIterator

from ..errors import StreamDecodeError
from .types import OutputChunk, StreamKind

# Docker multiplexed stream header: stream type, 3 zero bytes, big-endian payload size.
FRAME_HEADER = struct.Struct(">B3sI")
MAX_FRAME_SIZE = 8 * 1024 * 1024

_STREAM_TYPES = {
    0: StreamKind.STDOUT,  # stdin frames are written to stdout, like docker's stdcopy
    1: StreamKind.STDOUT,
    2: StreamKind.STDERR,
}
_PADDING = b"\x00\x00\x00"


class _SequenceCounter:
    """Per-stream monotonically increasing chunk numbers."""

    def __init__(self) -> None:
        """Start both streams before sequence 1.

        Example:
            ```python
            counter = _SequenceCounter()
            ```
        """
        self._last = {StreamKind.STDOUT: 0, StreamKind.STDERR: 0}

    def chunk(self, stream: StreamKind, data: bytes) -> OutputChunk:
        """Wrap data in the next chunk for its stream.

        Example:
            ```python
            chunk = counter.chunk(StreamKind.STDOUT, b"hi")
            ```
        """
        self._last[stream] += 1
        return OutputChunk(stream=stream, data=data, sequence=self._last[stream])


class FrameDecoder:
    """Incremental decoder for the Docker multiplexed stdout/stderr stream.

    Reads may split frames anywhere; incomplete frames are buffered until the
    rest arrives.

    Example:
        ```python
        decoder = FrameDecoder()
        chunks = decoder.feed(b"\\x01\\x00\\x00\\x00\\x00\\x00\\x00\\x02hi")
        decoder.close()
        ```
    """

    def __init__(self, *, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        """Create a decoder with an empty buffer.

        Example:
            ```python
            decoder = FrameDecoder(max_frame_size=1024)
            ```
        """
        self._buffer = bytearray()
        self._max_frame_size = max_frame_size
        self._counter = _SequenceCounter()
        self.error: StreamDecodeError | None = None

    def feed(self, data: bytes) -> list[OutputChunk]:
        """Consume raw bytes and return every frame completed by them.

        On a malformed frame the chunks decoded before it are still returned
        and `error` is set; `raise_for_error` (or the next `feed`) raises it.

        Example:
            ```python
            chunks = decoder.feed(raw_bytes)
            decoder.raise_for_error()
            ```
        """
        self.raise_for_error()
        self._buffer.extend(data)
        chunks: list[OutputChunk] = []
        while len(self._buffer) >= FRAME_HEADER.size:
            stream_type, padding, size = FRAME_HEADER.unpack_from(self._buffer)
            stream = _STREAM_TYPES.get(stream_type)
            if stream is None or padding != _PADDING:
                header = bytes(self._buffer[: FRAME_HEADER.size])
                self._fail(f"malformed frame header {header!r}")
                break
            if size > self._max_frame_size:
                self._fail(f"frame of {size} bytes exceeds limit of {self._max_frame_size}")
                break
            end = FRAME_HEADER.size + size
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[FRAME_HEADER.size : end])
            del self._buffer[:end]
            if payload:
                chunks.append(self._counter.chunk(stream, payload))
        return chunks

    def raise_for_error(self) -> None:
        """Raise the decode error recorded by an earlier `feed`, if any.

        Example:
            ```python
            decoder.raise_for_error()
            ```
        """
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        """Signal end of stream; leftover bytes mean a truncated frame.

        Example:
            ```python
            decoder.close()
            ```
        """
        self.raise_for_error()
        if self._buffer:
            self._fail(f"stream ended inside a frame ({len(self._buffer)} bytes pending)")
            self.raise_for_error()

    def _fail(self, detail: str) -> None:
        """Record a decode error and drop whatever is buffered.

        Example:
            ```python
            decoder._fail("malformed frame header")
            ```
        """
        self.error = StreamDecodeError(detail)
        self._buffer.clear()


class RawDecoder:
    """Decoder for tty containers, whose output is not framed.

    Example:
        ```python
        chunks = RawDecoder().feed(b"hello")
        ```
    """

    def __init__(self) -> None:
        """Create a decoder that maps every read to one stdout chunk.

        Example:
            ```python
            decoder = RawDecoder()
            ```
        """
        self._counter = _SequenceCounter()

    def feed(self, data: bytes) -> list[OutputChunk]:
        """Return the read as a single stdout chunk.

        Example:
            ```python
            [chunk] = decoder.feed(b"hello")
            ```
        """
        if not data:
            return []
        return [self._counter.chunk(StreamKind.STDOUT, bytes(data))]

    def raise_for_error(self) -> None:
        """Raw output cannot be malformed, so there is never an error.

        Example:
            ```python
            decoder.raise_for_error()
            ```
        """

    def close(self) -> None:
        """Nothing is buffered, so end of stream is always clean.

        Example:
            ```python
            decoder.close()
            ```
        """


async def demultiplex(source: AsyncIterable[bytes], *, tty: bool = False) -> AsyncIterator[OutputChunk]:
    """Decode a runtime output stream into ordered stdout/stderr chunks.

    Chunks are yielded as soon as their frame is complete. A malformed frame
    raises StreamDecodeError after every earlier chunk has been yielded.

    Example:
        ```python
        async for chunk in demultiplex(runtime.stream_logs(container_id)):
            print(chunk.stream, chunk.data)
        ```
    """
    decoder: FrameDecoder | RawDecoder = RawDecoder() if tty else FrameDecoder()
    async for data in source:
        for chunk in decoder.feed(data):
            yield chunk
        decoder.raise_for_error()
    decoder.close()
