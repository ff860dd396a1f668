"""Supervisor event loop: restart the child on source changes, carry its state over."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import signal
import sys
from typing import TextIO

from resteep.channel.state_channel import ChannelClosed, StatePipe, StateReceived, StateReceiver
from resteep.contracts import EXIT_HINT
from resteep.errors import ChannelClosedError
from resteep.supervisor.config import SupervisorConfig
from resteep.supervisor.models import SupervisorState
from resteep.supervisor.process_controller import ChildProcess, SubprocessController
from resteep.supervisor.terminal import Terminal
from resteep.supervisor.watcher import DirectoryWatcher, FileChange

logger = logging.getLogger("resteep.supervisor.loop")

MAX_PENDING_EVENTS = 1024
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def describe_exit(returncode: int) -> str:
    """Exit line shown to the user; negative codes are deaths by signal."""
    if returncode >= 0:
        return f"Process exited with code {returncode}."
    signum = -returncode
    try:
        name = signal.Signals(signum).name
    except ValueError:
        return f"Process killed by signal {signum}."
    return f"Process killed by signal {signum} ({name})."


@dataclass(frozen=True)
class ChildExited:
    child: ChildProcess


@dataclass(frozen=True)
class Interrupted:
    signum: int


class ReloadLoop:
    """Event queue, signal wiring and exit reporting shared by both strategies.

    Background workers only publish into the queue; the coordinating
    coroutine is the single consumer and the only writer of loop state.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        terminal: Terminal | None = None,
        watcher: DirectoryWatcher | None = None,
        output: TextIO | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.terminal = terminal
        self.watcher = watcher
        self.output = output or sys.stdout
        self.install_signal_handlers = install_signal_handlers
        self.state = SupervisorState.NO_CHILD
        self.last_exit_code: int | None = None
        self._events: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signals_installed: list[int] = []

    async def publish(self, event: object) -> None:
        assert self._events is not None
        await self._events.put(event)

    def publish_nowait(self, event: object) -> None:
        if self._events is None:
            return
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full; dropping %r", event)

    def request_interrupt(self, signum: int = signal.SIGINT) -> None:
        logger.info("Received signal %s", signal.Signals(signum).name)
        self.publish_nowait(Interrupted(signum))

    def _open_events(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        if not self.install_signal_handlers:
            return
        for signum in HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(signum, self.request_interrupt, signum)
            except (NotImplementedError, RuntimeError) as exc:
                logger.warning("Cannot handle %s: %s", signal.Signals(signum).name, exc)
                continue
            self._signals_installed.append(signum)

    def _close_events(self) -> None:
        if self._loop is not None:
            for signum in self._signals_installed:
                self._loop.remove_signal_handler(signum)
        self._signals_installed = []

    def _start_watcher(self) -> None:
        if self.watcher is None:
            self.watcher = DirectoryWatcher(
                self.config.root,
                extensions=self.config.extensions,
                excluded_dirs=self.config.excluded_dirs,
            )
        self.watcher.start(self.publish_nowait)

    def _report_exit(self, returncode: int) -> None:
        self.last_exit_code = returncode
        self.state = SupervisorState.AWAITING_USER_DECISION
        print(f"\n\n{describe_exit(returncode)}\n{EXIT_HINT}", file=self.output, flush=True)

    async def _next_event(self) -> object:
        assert self._events is not None
        return await self._events.get()


class Supervisor(ReloadLoop):
    """Runs the target as a supervised child and restarts it on change."""

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        terminal: Terminal | None = None,
        watcher: DirectoryWatcher | None = None,
        controller: SubprocessController | None = None,
        receiver: StateReceiver | None = None,
        output: TextIO | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        super().__init__(
            config,
            terminal=terminal,
            watcher=watcher,
            output=output,
            install_signal_handlers=install_signal_handlers,
        )
        self.controller = controller
        self.receiver = receiver
        self.pipe: StatePipe | None = None
        self.current_state = b""
        self._deferred_interrupt = False

    async def run(self) -> int:
        """Supervise until interrupted; returns the process exit status.

        Raises setup errors, SpawnError, and ChannelClosedError when the
        state channel reaches end of stream.
        """
        try:
            self._setup_terminal()
            self._open_events()
            self._start_watcher()
            await self._open_state_channel()
            await self._spawn()
            return await self._run_events()
        finally:
            await self._teardown()

    def _setup_terminal(self) -> None:
        if self.terminal is None:
            self.terminal = Terminal.capture()

    async def _open_state_channel(self) -> None:
        if self.receiver is None:
            self.pipe = StatePipe()
            self.receiver = StateReceiver(self.pipe.read_fd)
        if self.controller is None:
            assert self.pipe is not None
            self.controller = SubprocessController(
                self.config,
                state_write_fd=self.pipe.write_fd,
                terminal=self.terminal,
            )
        self.controller.on_exit = self._on_child_exit
        await self.receiver.start(self.publish)

    async def _on_child_exit(self, child: ChildProcess) -> None:
        await self.publish(ChildExited(child))

    async def _spawn(self) -> None:
        assert self.controller is not None
        self.state = SupervisorState.NO_CHILD
        await self.controller.restart(self.current_state)
        self.state = SupervisorState.CHILD_RUNNING

    async def _run_events(self) -> int:
        while True:
            event = await self._next_event()
            if isinstance(event, StateReceived):
                self.current_state = event.blob
            elif isinstance(event, ChannelClosed):
                logger.critical("State channel closed while supervising: %s", event.reason)
                raise ChannelClosedError()
            elif isinstance(event, FileChange):
                if self.state is SupervisorState.CHILD_RUNNING:
                    logger.info("Restarting after change in %s", event.path)
                else:
                    logger.info("Starting after change in %s", event.path)
                await self._spawn()
            elif isinstance(event, ChildExited):
                if not self._is_natural_exit(event.child):
                    continue
                self.controller.reclaim_foreground(event.child)
                self._report_exit(event.child.returncode)
                if self._deferred_interrupt:
                    return 0
            elif isinstance(event, Interrupted):
                if self._handle_interrupt(event.signum):
                    return 0

    def _is_natural_exit(self, child: ChildProcess) -> bool:
        return (
            self.state is SupervisorState.CHILD_RUNNING
            and child is self.controller.current
            and not child.kill_requested
        )

    def _handle_interrupt(self, signum: int) -> bool:
        """Return True when the supervisor should shut down now."""
        if signum == signal.SIGTERM or self.state is not SupervisorState.CHILD_RUNNING:
            return True
        # The terminal routes Ctrl-C to the child; honour it once the child is gone.
        self._deferred_interrupt = True
        if not self.terminal.interactive:
            self.controller.interrupt()
        return False

    async def _teardown(self) -> None:
        if self.controller is not None and getattr(self.controller, "current", None) is not None:
            await self.controller.stop()
        if self.watcher is not None:
            self.watcher.close()
        if self.receiver is not None:
            await self.receiver.close()
        if self.pipe is not None:
            self.pipe.close()
        self._close_events()
        if self.terminal is not None:
            self.terminal.restore_final()
