"""Exec strategy: run the program in-process and replace the process image on change."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import threading
import traceback
from typing import Mapping, TextIO

from resteep.agent.runtime import RunFn, load_state
from resteep.channel.state_channel import LatestState
from resteep.supervisor.config import SupervisorConfig
from resteep.supervisor.loop import Interrupted, ReloadLoop
from resteep.supervisor.models import SupervisorState
from resteep.supervisor.process_controller import ExecController, ProcessController
from resteep.supervisor.terminal import Terminal
from resteep.supervisor.watcher import DirectoryWatcher, FileChange

logger = logging.getLogger("resteep.supervisor.inplace")


@dataclass(frozen=True)
class ProgramFinished:
    returncode: int


def _exit_code(code: object) -> int:
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    return 1


class InPlaceReloader(ReloadLoop):
    """Single-process variant of the supervisor loop.

    The program runs on a daemon thread with an in-memory state channel. A
    source change re-executes the interpreter with the latest state, so
    terminate and spawn collapse into one step. Any interrupt exits, since
    there is no separate child to route it to.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        run: RunFn,
        *,
        environ: Mapping[str, str] | None = None,
        terminal: Terminal | None = None,
        watcher: DirectoryWatcher | None = None,
        controller: ProcessController | None = None,
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
        self.run_fn = run
        self.environ = os.environ if environ is None else environ
        self.controller = controller
        self.channel = LatestState()

    async def run(self) -> int:
        try:
            if self.terminal is None:
                self.terminal = Terminal.capture()
            self.channel = LatestState(load_state(self.environ) or b"")
            if self.controller is None:
                self.controller = ExecController(
                    self.config,
                    environ=self.environ,
                    terminal=self.terminal,
                )
            self._open_events()
            self._start_watcher()
            self._start_program()
            return await self._run_events()
        finally:
            if self.watcher is not None:
                self.watcher.close()
            self._close_events()
            if self.terminal is not None:
                self.terminal.restore_final()

    def _start_program(self) -> None:
        thread = threading.Thread(
            target=self._run_program,
            args=(self.channel.latest,),
            name="resteep-program",
            daemon=True,
        )
        self.state = SupervisorState.CHILD_RUNNING
        thread.start()

    def _run_program(self, state: bytes) -> None:
        returncode = 0
        try:
            self.run_fn(state, self.channel)
        except SystemExit as exc:
            returncode = _exit_code(exc.code)
        except Exception:
            logger.exception("Program failed")
            traceback.print_exc()
            returncode = 1
        try:
            self._loop.call_soon_threadsafe(self.publish_nowait, ProgramFinished(returncode))
        except RuntimeError:
            logger.debug("Event loop closed before program finished")

    async def _run_events(self) -> int:
        while True:
            event = await self._next_event()
            if isinstance(event, FileChange):
                logger.info("Re-executing after change in %s", event.path)
                self.watcher.close()
                await self.controller.restart(self.channel.latest)
            elif isinstance(event, ProgramFinished):
                self._report_exit(event.returncode)
            elif isinstance(event, Interrupted):
                return 0
