"""Tests for the exec reload strategy running the program in-process."""

from __future__ import annotations

import asyncio
import base64
import io
import signal
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from resteep.errors import StateDecodeError
from resteep.supervisor.config import SupervisorConfig
from resteep.supervisor.inplace import InPlaceReloader
from resteep.supervisor.loop import Interrupted
from resteep.supervisor.models import ReloadStrategy, SupervisorState
from resteep.supervisor.terminal import Terminal
from resteep.supervisor.watcher import FileChange


class _Reexec(Exception):
    """Raised by the fake controller in place of replacing the process."""


class _FakeWatcher:
    def __init__(self) -> None:
        self.closed = False

    def start(self, publish) -> None:
        self.publish = publish

    def close(self) -> None:
        self.closed = True


class _FakeExecController:
    def __init__(self) -> None:
        self.states: list[bytes] = []

    async def restart(self, state: bytes):
        self.states.append(state)
        raise _Reexec()


class InPlaceReloaderTests(unittest.IsolatedAsyncioTestCase):
    """Validate state loading, exit reporting and re-exec on change."""

    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        target = root / "app.py"
        target.write_text("pass\n", encoding="utf-8")
        self.config = SupervisorConfig(
            target=target,
            root=root,
            interpreter_flags=[],
            strategy=ReloadStrategy.EXEC,
        )
        self.terminal = Terminal.detached()
        self.watcher = _FakeWatcher()
        self.controller = _FakeExecController()
        self.output = io.StringIO()

    async def asyncTearDown(self) -> None:
        self.tmp.cleanup()

    def _reloader(self, run, environ=None) -> InPlaceReloader:
        return InPlaceReloader(
            self.config,
            run,
            environ=environ if environ is not None else {},
            terminal=self.terminal,
            watcher=self.watcher,
            controller=self.controller,
            output=self.output,
            install_signal_handlers=False,
        )

    async def _wait_finished(self, reloader: InPlaceReloader) -> None:
        for _ in range(500):
            if reloader.state is SupervisorState.AWAITING_USER_DECISION:
                return
            await asyncio.sleep(0.01)
        self.fail("program did not finish")

    async def test_program_exit_is_reported_then_interrupt_exits(self) -> None:
        def program(state, channel):
            channel.send(b"x")
            raise SystemExit(3)

        reloader = self._reloader(program)
        task = asyncio.create_task(reloader.run())
        await self._wait_finished(reloader)
        self.assertIn("Process exited with code 3.", self.output.getvalue())
        reloader.publish_nowait(Interrupted(signal.SIGINT))
        self.assertEqual(await asyncio.wait_for(task, 5), 0)
        self.assertTrue(self.watcher.closed)

    async def test_change_reexecs_with_latest_state(self) -> None:
        seen: list[bytes] = []

        def program(state, channel):
            seen.append(state)
            channel.send(b"first")
            channel.send(b"newest")

        environ = {"RESTEEP_STATE": base64.b64encode(b"seed").decode("ascii")}
        reloader = self._reloader(program, environ)
        task = asyncio.create_task(reloader.run())
        await self._wait_finished(reloader)
        reloader.publish_nowait(FileChange(str(self.config.target), "modified"))
        with self.assertRaises(_Reexec):
            await asyncio.wait_for(task, 5)
        self.assertEqual(seen, [b"seed"])
        self.assertEqual(self.controller.states, [b"newest"])
        self.assertTrue(self.watcher.closed)

    async def test_program_error_reports_exit_code_one(self) -> None:
        def program(state, channel):
            raise RuntimeError("boom")

        reloader = self._reloader(program)
        with self.assertLogs("resteep.supervisor.inplace", level="ERROR"), mock.patch(
            "resteep.supervisor.inplace.traceback.print_exc"
        ):
            task = asyncio.create_task(reloader.run())
            await self._wait_finished(reloader)
        self.assertEqual(reloader.last_exit_code, 1)
        reloader.publish_nowait(Interrupted(signal.SIGTERM))
        await asyncio.wait_for(task, 5)

    async def test_invalid_inherited_state_fails_before_running(self) -> None:
        ran: list[bytes] = []
        reloader = self._reloader(lambda state, channel: ran.append(state), {"RESTEEP_STATE": "***"})
        with mock.patch.object(self.terminal, "restore_final") as restore_final:
            with self.assertRaises(StateDecodeError):
                await reloader.run()
        restore_final.assert_called_once()
        self.assertEqual(ran, [])


if __name__ == "__main__":
    unittest.main()
