"""Recursive source-tree watcher feeding file-change events to the supervisor."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Callable, Iterable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from resteep.contracts import DEFAULT_EXCLUDED_DIRS, DEFAULT_SOURCE_EXTENSIONS
from resteep.errors import WatcherSetupError

logger = logging.getLogger("resteep.supervisor.watcher")

FORWARDED_EVENT_TYPES = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED}
MAX_PENDING_CHANGES = 256


@dataclass(frozen=True)
class FileChange:
    path: str
    kind: str


def is_excluded_dir(name: str, excluded_dirs: Iterable[str]) -> bool:
    """Return True for hidden directories and dependency directories."""
    return name.startswith(".") or name in set(excluded_dirs)


class _SourceChangeHandler(FileSystemEventHandler):
    """Runs on the observer thread; filters raw events and registers new dirs."""

    def __init__(self, watcher: "DirectoryWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def change_for(self, event: FileSystemEvent) -> FileChange | None:
        """Map a raw event to the source change it stands for, if any."""
        if event.event_type == EVENT_TYPE_MOVED:
            # The destination of a rename is a new file there; the old name is ignored.
            path, kind = _as_str(event.dest_path), EVENT_TYPE_CREATED
        elif event.event_type in FORWARDED_EVENT_TYPES:
            path, kind = _as_str(event.src_path), event.event_type
        else:
            return None
        if Path(path).suffix not in self.watcher.extensions:
            return None
        return FileChange(path, kind)

    def should_forward(self, event: FileSystemEvent) -> bool:
        return self.change_for(event) is not None

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            if event.is_directory:
                if event.event_type == EVENT_TYPE_CREATED:
                    self.watcher.add_directory(Path(_as_str(event.src_path)))
                elif event.event_type == EVENT_TYPE_MOVED:
                    self.watcher.add_directory(Path(_as_str(event.dest_path)))
            change = self.change_for(event)
            if change is not None:
                self.watcher.publish(change)
        except Exception:
            logger.exception("Watcher error while handling %s", event)


def _as_str(path: str | bytes) -> str:
    return os.fsdecode(path)


class DirectoryWatcher:
    """Watch every qualifying directory under root for source-file changes.

    Each directory gets its own non-recursive watch so hidden and dependency
    trees are never observed. The watch set only grows: a directory stays
    registered after it is deleted.
    """

    def __init__(
        self,
        root: Path,
        *,
        extensions: Iterable[str] = DEFAULT_SOURCE_EXTENSIONS,
        excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        observer: BaseObserver | None = None,
    ) -> None:
        self.root = Path(root)
        self.extensions = frozenset(extensions)
        self.excluded_dirs = frozenset(excluded_dirs)
        self.observer = observer if observer is not None else Observer()
        self.handler = _SourceChangeHandler(self)
        self._watches: dict[Path, ObservedWatch] = {}
        self._publish: Callable[[FileChange], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[FileChange | None] | None = None
        self._closed = False

    @property
    def watch_set(self) -> frozenset[Path]:
        return frozenset(self._watches)

    def register_tree(self) -> None:
        """Walk root and schedule a watch for each qualifying directory."""
        if not self.root.is_dir():
            raise WatcherSetupError(f"watch root is not a directory: {self.root}")

        def _raise(exc: OSError) -> None:
            raise exc

        try:
            for dirpath, dirnames, _ in os.walk(self.root, onerror=_raise):
                dirnames[:] = [
                    name for name in dirnames if not is_excluded_dir(name, self.excluded_dirs)
                ]
                self._schedule(Path(dirpath))
        except OSError as exc:
            raise WatcherSetupError(f"failed to watch {self.root}: {exc}") from exc
        logger.info("Watching %d directories under %s", len(self._watches), self.root)

    def _schedule(self, path: Path) -> None:
        stale = self._watches.get(path)
        if stale is not None:
            # A recreated directory needs a fresh emitter.
            try:
                self.observer.unschedule(stale)
            except KeyError:
                logger.debug("Stale watch for %s already released", path)
        self._watches[path] = self.observer.schedule(self.handler, str(path), recursive=False)

    def add_directory(self, path: Path) -> None:
        """Register a directory created after startup; failures are only logged."""
        if is_excluded_dir(path.name, self.excluded_dirs):
            logger.debug("Skipping excluded directory %s", path)
            return
        try:
            self._schedule(path)
        except OSError as exc:
            logger.warning("Failed to watch new directory %s: %s", path, exc)
            return
        logger.info("Watching new directory %s", path)

    def start(self, publish: Callable[[FileChange], None] | None = None) -> None:
        """Register the tree and start the observer thread.

        Must be called from the event loop that consumes changes. Without a
        publish callback, changes are queued for async iteration.
        """
        self._loop = asyncio.get_running_loop()
        if publish is None:
            self._queue = asyncio.Queue(maxsize=MAX_PENDING_CHANGES)
            publish = self._enqueue
        self._publish = publish
        self.register_tree()
        self.observer.start()

    def publish(self, change: FileChange) -> None:
        """Hand a change to the loop thread; safe to call from the observer."""
        if self._closed or self._loop is None or self._publish is None:
            return
        logger.info("Detected %s change in %s", change.kind, change.path)
        self._loop.call_soon_threadsafe(self._publish, change)

    def _enqueue(self, change: FileChange) -> None:
        assert self._queue is not None
        if self._queue.full():
            logger.warning("Change queue full; dropping event for %s", change.path)
            return
        self._queue.put_nowait(change)

    def _end_iteration(self) -> None:
        assert self._queue is not None
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "DirectoryWatcher":
        return self

    async def __anext__(self) -> FileChange:
        if self._queue is None:
            raise RuntimeError("watcher was started with a publish callback")
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    def close(self) -> None:
        """Stop the observer and release every watch; ends async iteration."""
        if self._closed:
            return
        self._closed = True
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=5)
        self.observer.unschedule_all()
        if self._queue is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._end_iteration)
