"""Controlling-terminal snapshot and foreground process-group handoff."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import os
import signal
import sys
import termios
from typing import Any, Iterator

from resteep.errors import TerminalStateError

logger = logging.getLogger("resteep.supervisor.terminal")


@contextmanager
def ignoring_sigttou() -> Iterator[None]:
    """Ignore SIGTTOU for the duration of the block.

    A background process group that changes the terminal foreground group gets
    SIGTTOU and would be stopped. The previous disposition is restored before
    the block returns control to anything else; main thread only.
    """
    previous = signal.signal(signal.SIGTTOU, signal.SIG_IGN)
    try:
        yield
    finally:
        signal.signal(signal.SIGTTOU, previous)


class Terminal:
    """The supervisor's view of stdin's terminal.

    Non-interactive terminals (pipes, files, test runners) keep every method
    callable; foreground and mode operations simply do nothing.
    """

    def __init__(self, fd: int, *, interactive: bool, snapshot: list[Any] | None = None) -> None:
        self.fd = fd
        self.interactive = interactive
        self.snapshot = snapshot
        self.supervisor_pgid = os.getpgrp()
        self._final_restore_done = False

    @classmethod
    def capture(cls, fd: int | None = None) -> "Terminal":
        """Snapshot the terminal mode once at startup."""
        if fd is None:
            fd = sys.stdin.fileno()
        if not os.isatty(fd):
            logger.info("stdin is not a terminal; foreground handoff disabled")
            return cls(fd, interactive=False)
        try:
            snapshot = termios.tcgetattr(fd)
        except termios.error as exc:
            raise TerminalStateError(f"failed to get terminal state: {exc}") from exc
        return cls(fd, interactive=True, snapshot=snapshot)

    @classmethod
    def detached(cls) -> "Terminal":
        return cls(-1, interactive=False)

    def foreground_pgid(self) -> int | None:
        if not self.interactive:
            return None
        try:
            return os.tcgetpgrp(self.fd)
        except OSError as exc:
            logger.warning("Failed to read foreground process group: %s", exc)
            return None

    def give_foreground(self, pgid: int) -> bool:
        """Make pgid the terminal's foreground group so it receives Ctrl-C."""
        if not self.interactive:
            return False
        try:
            with ignoring_sigttou():
                os.tcsetpgrp(self.fd, pgid)
        except OSError as exc:
            logger.warning("Failed to set foreground process group to %s: %s", pgid, exc)
            return False
        logger.debug("Terminal foreground handed to process group %s", pgid)
        return True

    def reclaim_foreground(self) -> None:
        """Take the foreground back for the supervisor and restore the mode."""
        if not self.interactive:
            return
        try:
            with ignoring_sigttou():
                os.tcsetpgrp(self.fd, self.supervisor_pgid)
        except OSError as exc:
            logger.warning("Failed to reclaim foreground: %s", exc)
        self.restore()

    def restore(self) -> None:
        if self.snapshot is None:
            return
        try:
            with ignoring_sigttou():
                termios.tcsetattr(self.fd, termios.TCSADRAIN, self.snapshot)
        except termios.error as exc:
            logger.warning("Failed to restore terminal state: %s", exc)

    def restore_final(self) -> None:
        """Restore the startup snapshot on supervisor exit; later calls are no-ops."""
        if self._final_restore_done:
            return
        self._final_restore_done = True
        self.restore()
