"""Child process spawning, process-group kill and restart strategies."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import signal
import sys
from typing import Awaitable, Callable, Mapping

from resteep.contracts import STATE_ENV_VAR, STATE_FD
from resteep.errors import SpawnError
from resteep.supervisor.config import SupervisorConfig, resolve_python
from resteep.supervisor.models import ChildStatus
from resteep.supervisor.terminal import Terminal

logger = logging.getLogger("resteep.supervisor.process_controller")

# Dispositions reset to default in the child; ignored signals survive exec.
_DEFAULT_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGTTOU", "SIGTTIN", "SIGTSTP", "SIGPIPE", "SIGXFSZ")
    if hasattr(signal, name)
)


def encode_state(state: bytes) -> str:
    return base64.b64encode(state).decode("ascii")


def build_child_env(environ: Mapping[str, str], state: bytes) -> dict[str, str]:
    """Copy environ with the state variable replaced by base64(state)."""
    env = {key: value for key, value in environ.items() if key != STATE_ENV_VAR}
    env[STATE_ENV_VAR] = encode_state(state)
    return env


class ChildProcess:
    """One child instance. Never reused: every restart creates a new record."""

    def __init__(self, pid: int, pgid: int) -> None:
        self.pid = pid
        self.pgid = pgid
        self.status = ChildStatus.RUNNING
        self.returncode: int | None = None
        self.kill_requested = False
        self.foreground_reclaimed = False
        self._exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def alive(self) -> bool:
        return self.status is ChildStatus.RUNNING

    def mark_exited(self, returncode: int) -> None:
        self.returncode = returncode
        self.status = ChildStatus.KILLED if self.kill_requested else ChildStatus.EXITED
        if not self._exited.done():
            self._exited.set_result(returncode)

    async def wait(self) -> int:
        """Wait for the OS to confirm exit; no timeout."""
        return await asyncio.shield(self._exited)

    def __repr__(self) -> str:
        return f"ChildProcess(pid={self.pid}, pgid={self.pgid}, status={self.status.value})"


class ProcessController:
    """Common launch details for the target; subclasses choose how to restart."""

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        python: str | None = None,
        environ: Mapping[str, str] | None = None,
        terminal: Terminal | None = None,
    ) -> None:
        self.config = config
        self.python = python or resolve_python(config)
        self.environ = environ if environ is not None else os.environ
        self.terminal = terminal or Terminal.detached()

    def build_argv(self) -> list[str]:
        return [self.python, *self.config.interpreter_flags, str(self.config.target), *self.config.args]

    def build_env(self, state: bytes) -> dict[str, str]:
        return build_child_env(self.environ, state)

    async def restart(self, state: bytes) -> ChildProcess:
        """Replace the running instance with one started from state."""
        raise NotImplementedError


class SubprocessController(ProcessController):
    """Runs the target as a child in its own process group."""

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        state_write_fd: int,
        on_exit: Callable[[ChildProcess], Awaitable[None]] | None = None,
        python: str | None = None,
        environ: Mapping[str, str] | None = None,
        terminal: Terminal | None = None,
    ) -> None:
        super().__init__(config, python=python, environ=environ, terminal=terminal)
        self.state_write_fd = state_write_fd
        self.on_exit = on_exit
        self.current: ChildProcess | None = None
        self._exit_tasks: set[asyncio.Task] = set()

    async def spawn(self, state: bytes) -> ChildProcess:
        if self.current is not None and self.current.alive:
            raise SpawnError(f"refusing to spawn while {self.current!r} is still running")
        argv = self.build_argv()
        logger.info("Starting child: %s (state %d bytes)", " ".join(argv), len(state))
        try:
            pid = os.posix_spawn(
                argv[0],
                argv,
                self.build_env(state),
                file_actions=[(os.POSIX_SPAWN_DUP2, self.state_write_fd, STATE_FD)],
                setpgroup=0,
                setsigdef=_DEFAULT_SIGNALS,
            )
        except OSError as exc:
            raise SpawnError(f"failed to start subprocess: {exc}") from exc

        child = ChildProcess(pid=pid, pgid=pid)
        self.current = child
        if self.terminal.give_foreground(child.pgid):
            # The child may have touched the terminal before the handoff.
            try:
                os.killpg(child.pgid, signal.SIGCONT)
            except OSError:
                pass
        task = asyncio.create_task(self._watch_exit(child), name=f"resteep-exit-{pid}")
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)
        return child

    async def _watch_exit(self, child: ChildProcess) -> None:
        _, status = await asyncio.to_thread(os.waitpid, child.pid, 0)
        returncode = os.waitstatus_to_exitcode(status)
        child.mark_exited(returncode)
        logger.info("Child %s exited with code %s", child.pid, returncode)
        if self.on_exit is not None:
            await self.on_exit(child)

    def terminate(self, child: ChildProcess | None = None) -> None:
        """SIGKILL the child's whole process group. Safe on exited children."""
        child = child or self.current
        if child is None or not child.alive:
            return
        child.kill_requested = True
        try:
            pgid = os.getpgid(child.pid)
        except OSError as exc:
            logger.warning("Failed to get child pgid: %s", exc)
            pgid = None
        try:
            if pgid is not None and pgid != os.getpgrp():
                os.killpg(pgid, signal.SIGKILL)
            else:
                os.kill(child.pid, signal.SIGKILL)
        except OSError as exc:
            logger.warning("Failed to send SIGKILL to child %s: %s", child.pid, exc)

    def interrupt(self, child: ChildProcess | None = None) -> None:
        """Forward SIGINT to the child's group when it does not own the terminal."""
        child = child or self.current
        if child is None or not child.alive:
            return
        try:
            os.killpg(child.pgid, signal.SIGINT)
        except OSError as exc:
            logger.warning("Failed to forward SIGINT to child %s: %s", child.pid, exc)

    def reclaim_foreground(self, child: ChildProcess | None = None) -> None:
        """Take the terminal back from child once it is gone; repeat calls do nothing."""
        child = child or self.current
        if child is not None:
            if child.foreground_reclaimed:
                return
            child.foreground_reclaimed = True
        self.terminal.reclaim_foreground()

    async def stop(self) -> None:
        """Kill the current child, wait for its exit and take the terminal back."""
        child = self.current
        if child is None:
            return
        self.terminate(child)
        await child.wait()
        # Also covers a child that exited on its own before its exit event was handled.
        self.reclaim_foreground(child)

    async def restart(self, state: bytes) -> ChildProcess:
        await self.stop()
        return await self.spawn(state)


class ExecController(ProcessController):
    """Replaces the current process image instead of supervising a child."""

    async def restart(self, state: bytes) -> ChildProcess:
        argv = self.build_argv()
        env = self.build_env(state)
        logger.info("Re-executing in place: %s (state %d bytes)", " ".join(argv), len(state))
        self.terminal.restore_final()
        for handler in logging.getLogger().handlers:
            handler.flush()
        sys.stdout.flush()
        sys.stderr.flush()
        try:
            os.execve(argv[0], argv, env)
        except OSError as exc:
            raise SpawnError(f"failed to re-exec: {exc}") from exc
        raise SpawnError("execve returned without replacing the process")
