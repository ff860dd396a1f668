"""Length-prefixed framing for the state hand-off pipe.

Each frame is a 4-byte unsigned big-endian length followed by that many payload
bytes. There is no checksum and no version field: both ends of the pipe come
from the same installation.
"""

from __future__ import annotations

import asyncio
import struct
from typing import BinaryIO

from resteep.contracts import FRAME_HEADER_SIZE, MAX_FRAME_SIZE
from resteep.errors import FrameEOFError

_HEADER = struct.Struct(">I")


def encode_frame(payload: bytes) -> bytes:
    """Return the length prefix and payload as one buffer."""
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError(f"frame payload too large: {len(payload)} bytes")
    return _HEADER.pack(len(payload)) + bytes(payload)


def _read_exactly(stream: BinaryIO, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise FrameEOFError(f"stream ended with {remaining} of {size} bytes unread")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def decode_frame(stream: BinaryIO) -> bytes:
    """Read one frame from a blocking binary stream.

    Raises FrameEOFError when the stream ends before the header or the payload
    is complete, including a clean end of stream between frames.
    """
    header = _read_exactly(stream, FRAME_HEADER_SIZE)
    (length,) = _HEADER.unpack(header)
    if length == 0:
        return b""
    return _read_exactly(stream, length)


def write_frame(stream: BinaryIO, payload: bytes) -> None:
    """Write one frame with a single buffer so short frames stay atomic on pipes."""
    data = memoryview(encode_frame(payload))
    while data:
        written = stream.write(data)
        if written is None:
            raise BlockingIOError("frame write would block")
        data = data[written:]
    stream.flush()


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    """Async counterpart of decode_frame for an asyncio stream reader."""
    try:
        header = await reader.readexactly(FRAME_HEADER_SIZE)
        (length,) = _HEADER.unpack(header)
        if length == 0:
            return b""
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise FrameEOFError(
            f"stream ended with {exc.expected - len(exc.partial)} of {exc.expected} bytes unread"
        ) from exc
