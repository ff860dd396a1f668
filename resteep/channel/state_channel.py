"""State hand-off channel between a child program and its supervisor."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import os
import threading
from typing import Awaitable, Callable

from resteep.channel.frames import read_frame, write_frame
from resteep.contracts import STATE_FD
from resteep.errors import FrameEOFError, StatePipeError

logger = logging.getLogger("resteep.channel.state_channel")


@dataclass(frozen=True)
class StateReceived:
    blob: bytes


@dataclass(frozen=True)
class ChannelClosed:
    reason: str = "end of stream"


class StatePipe:
    """OS pipe that lives for the whole supervisor run.

    The supervisor holds on to its own copy of the write end, so the read side
    only reaches end of stream if that copy is closed.
    """

    def __init__(self) -> None:
        try:
            self.read_fd, self.write_fd = os.pipe()
            if self.write_fd == STATE_FD:
                # posix_spawn dup2 onto the same number may keep close-on-exec.
                moved = os.dup(self.write_fd)
                os.close(self.write_fd)
                self.write_fd = moved
        except OSError as exc:
            raise StatePipeError(f"failed to create pipe: {exc}") from exc
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                logger.debug("State pipe fd %s already closed", fd)


class StateReceiver:
    """Read frames off the pipe and publish them to the supervisor loop."""

    def __init__(self, read_fd: int) -> None:
        self.read_fd = read_fd
        self._publish: Callable[[object], Awaitable[None]] | None = None
        self._transport: asyncio.ReadTransport | None = None
        self._task: asyncio.Task | None = None

    async def start(self, publish: Callable[[object], Awaitable[None]]) -> None:
        self._publish = publish
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        pipe = os.fdopen(self.read_fd, "rb", buffering=0, closefd=False)
        self._transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
        self._task = asyncio.create_task(self._run(reader), name="resteep-state-reader")

    async def _run(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                blob = await read_frame(reader)
            except FrameEOFError as exc:
                logger.error("State channel reached end of stream: %s", exc)
                await self._publish(ChannelClosed(str(exc)))
                return
            logger.debug("Received state frame (%d bytes)", len(blob))
            await self._publish(StateReceived(blob))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None


class StateMailbox:
    """Single-slot hand-off where a newer blob replaces an unsent older one."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: bytes | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, blob: bytes) -> bool:
        """Store blob; return True when an unsent blob was dropped for it."""
        with self._cond:
            if self._closed:
                return False
            dropped = self._pending is not None
            self._pending = blob
            self._cond.notify()
            return dropped

    def take(self) -> bytes | None:
        """Block for the next blob; None once closed and drained."""
        with self._cond:
            while self._pending is None and not self._closed:
                self._cond.wait()
            blob, self._pending = self._pending, None
            return blob

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class StateSender:
    """Child-side channel writing state snapshots to the inherited pipe fd.

    send() never blocks the caller. A writer thread frames blobs onto the fd;
    if the supervisor has not drained the previous write yet, only the newest
    unsent blob is kept.
    """

    def __init__(self, fd: int = STATE_FD) -> None:
        self._stream = os.fdopen(fd, "wb", buffering=0)
        self._mailbox = StateMailbox()
        self._thread = threading.Thread(
            target=self._drain,
            name="resteep-state-writer",
            daemon=True,
        )
        self._thread.start()

    def send(self, blob: bytes) -> None:
        if self._mailbox.put(bytes(blob)):
            logger.debug("Replaced unsent state blob with newer snapshot")

    def close(self, timeout: float | None = 5.0) -> None:
        """Flush the pending blob, then close the fd."""
        self._mailbox.close()
        self._thread.join(timeout)

    def _drain(self) -> None:
        try:
            while True:
                blob = self._mailbox.take()
                if blob is None:
                    return
                write_frame(self._stream, blob)
        except OSError as exc:
            logger.warning("State channel write failed; dropping further state: %s", exc)
            self._mailbox.close()
        finally:
            self._stream.close()

    def __enter__(self) -> "StateSender":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LatestState:
    """In-process channel for the exec strategy; remembers the newest blob."""

    def __init__(self, initial: bytes = b"") -> None:
        self._lock = threading.Lock()
        self._latest = initial

    @property
    def latest(self) -> bytes:
        with self._lock:
            return self._latest

    def send(self, blob: bytes) -> None:
        with self._lock:
            self._latest = bytes(blob)

    def close(self) -> None:
        return None
