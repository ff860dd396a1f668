"""Tests for source-tree watching, event filtering and watch-set growth."""

from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from resteep.errors import WatcherSetupError
from resteep.supervisor.watcher import DirectoryWatcher, FileChange, is_excluded_dir


class _TreeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        for rel in ("src/pkg", ".git/objects", "vendor/lib", "__pycache__"):
            (self.root / rel).mkdir(parents=True)
        self.watcher = DirectoryWatcher(
            self.root,
            extensions=[".py"],
            excluded_dirs=["vendor", "__pycache__"],
        )
        self.published: list[FileChange] = []
        self.publish_patch = mock.patch.object(self.watcher, "publish", side_effect=self.published.append)
        self.publish_patch.start()

    def tearDown(self) -> None:
        self.publish_patch.stop()
        self.watcher.close()
        self.tmp.cleanup()


class WatchSetTests(_TreeTestCase):
    """Validate initial registration and monotonic growth."""

    def test_register_tree_skips_hidden_and_excluded_dirs(self) -> None:
        self.watcher.register_tree()
        self.assertEqual(
            self.watcher.watch_set,
            {self.root, self.root / "src", self.root / "src" / "pkg"},
        )

    def test_created_directory_is_registered(self) -> None:
        self.watcher.register_tree()
        new_dir = self.root / "src" / "newpkg"
        new_dir.mkdir()
        self.watcher.handler.on_any_event(DirCreatedEvent(str(new_dir)))
        self.assertIn(new_dir, self.watcher.watch_set)

    def test_created_hidden_or_vendor_directory_is_not_registered(self) -> None:
        self.watcher.register_tree()
        for name in (".cache", "vendor"):
            path = self.root / "src" / name
            path.mkdir()
            self.watcher.handler.on_any_event(DirCreatedEvent(str(path)))
            self.assertNotIn(path, self.watcher.watch_set)

    def test_deleted_directory_stays_in_watch_set(self) -> None:
        self.watcher.register_tree()
        pkg = self.root / "src" / "pkg"
        pkg.rmdir()
        self.watcher.handler.on_any_event(DirDeletedEvent(str(pkg)))
        self.assertIn(pkg, self.watcher.watch_set)
        pkg.mkdir()
        self.watcher.handler.on_any_event(DirCreatedEvent(str(pkg)))
        self.assertIn(pkg, self.watcher.watch_set)
        self.assertEqual(len(self.watcher.watch_set), 3)

    def test_missing_root_fails_setup(self) -> None:
        watcher = DirectoryWatcher(self.root / "missing")
        with self.assertRaises(WatcherSetupError):
            watcher.register_tree()

    def test_is_excluded_dir(self) -> None:
        self.assertTrue(is_excluded_dir(".git", ["vendor"]))
        self.assertTrue(is_excluded_dir("vendor", ["vendor"]))
        self.assertFalse(is_excluded_dir("src", ["vendor"]))


class EventFilterTests(_TreeTestCase):
    """Validate which raw filesystem events become source changes."""

    def test_source_write_create_delete_forward_exactly_once(self) -> None:
        path = str(self.root / "src" / "app.py")
        for event in (FileModifiedEvent(path), FileCreatedEvent(path), FileDeletedEvent(path)):
            self.watcher.handler.on_any_event(event)
        self.assertEqual(
            self.published,
            [
                FileChange(path, "modified"),
                FileChange(path, "created"),
                FileChange(path, "deleted"),
            ],
        )

    def test_non_source_extension_is_ignored(self) -> None:
        for name in ("notes.txt", "app.pyc", "Makefile"):
            self.watcher.handler.on_any_event(FileModifiedEvent(str(self.root / name)))
        self.assertEqual(self.published, [])

    def test_rename_away_and_close_events_are_ignored(self) -> None:
        self.watcher.handler.on_any_event(
            FileMovedEvent(str(self.root / "a.txt"), str(self.root / "b.txt"))
        )
        self.watcher.handler.on_any_event(
            FileMovedEvent(str(self.root / "a.py"), str(self.root / "a.txt"))
        )
        self.watcher.handler.on_any_event(FileClosedEvent(str(self.root / "a.py")))
        self.assertEqual(self.published, [])

    def test_rename_onto_source_path_is_a_create(self) -> None:
        dest = str(self.root / "src" / "app.py")
        self.watcher.handler.on_any_event(FileMovedEvent(dest + ".tmp1234", dest))
        self.assertEqual(self.published, [FileChange(dest, "created")])

    def test_directory_renamed_into_tree_is_registered(self) -> None:
        self.watcher.register_tree()
        moved = self.root / "src" / "renamed"
        moved.mkdir()
        self.watcher.handler.on_any_event(DirMovedEvent(str(self.root / "elsewhere"), str(moved)))
        self.assertIn(moved, self.watcher.watch_set)

    def test_handler_errors_are_logged_not_raised(self) -> None:
        new_dir = self.root / "src" / "broken"
        with mock.patch.object(self.watcher, "add_directory", side_effect=RuntimeError("boom")):
            with self.assertLogs("resteep.supervisor.watcher", level="ERROR"):
                self.watcher.handler.on_any_event(DirCreatedEvent(str(new_dir)))


class WatcherIntegrationTests(unittest.IsolatedAsyncioTestCase):
    """Exercise the real observer thread against a temporary tree."""

    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.watcher = DirectoryWatcher(self.root, extensions=[".py"])
        self.watcher.start()

    async def asyncTearDown(self) -> None:
        self.watcher.close()
        self.tmp.cleanup()

    async def _wait_for(self, predicate, timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                self.fail("condition not reached in time")
            await asyncio.sleep(0.05)

    async def test_source_change_is_delivered_and_other_files_are_not(self) -> None:
        (self.root / "notes.txt").write_text("ignored", encoding="utf-8")
        (self.root / "app.py").write_text("print('hi')\n", encoding="utf-8")
        change = await asyncio.wait_for(self.watcher.__anext__(), 5)
        self.assertTrue(change.path.endswith("app.py"))

    async def test_atomic_save_by_rename_is_delivered(self) -> None:
        tmp_file = self.root / "app.py.tmp1234"
        tmp_file.write_text("print('saved')\n", encoding="utf-8")
        os.replace(tmp_file, self.root / "app.py")
        change = await asyncio.wait_for(self.watcher.__anext__(), 5)
        self.assertEqual(Path(change.path).name, "app.py")
        self.assertEqual(change.kind, "created")

    async def test_new_subdirectory_is_watched(self) -> None:
        sub = self.root / "sub"
        sub.mkdir()
        await self._wait_for(lambda: sub in self.watcher.watch_set)
        (sub / "mod.py").write_text("x = 1\n", encoding="utf-8")
        change = await asyncio.wait_for(self.watcher.__anext__(), 5)
        self.assertEqual(Path(change.path).name, "mod.py")

    async def test_close_ends_iteration(self) -> None:
        self.watcher.close()

        async def _drain() -> list[FileChange]:
            return [change async for change in self.watcher]

        self.assertEqual(await asyncio.wait_for(_drain(), 5), [])


if __name__ == "__main__":
    unittest.main()
