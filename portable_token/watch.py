from __future__ import annotations

import asyncio
import errno
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from portable_token.errors import DirectoryWatchFailed, WatcherSetupFailed
from portable_token.extractor import ListenEvent

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT = 5.0
_HEALTH_INTERVAL = 1.0


@dataclass(frozen=True)
class FileEvent:
    path: str
    kind: ListenEvent


@dataclass(frozen=True)
class WatchFailure:
    error: BaseException


@dataclass(frozen=True)
class WatchClosed:
    source: str


WatchItem = Union[FileEvent, WatchFailure, WatchClosed]


class _QueueingHandler(FileSystemEventHandler):
    """Forwards file events from the observer thread to the watch queue."""

    def __init__(self, watch: DirectoryWatch) -> None:
        super().__init__()
        self._watch = watch

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            super().dispatch(event)
        except Exception as exc:
            self._watch.deliver(WatchFailure(exc))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watch.deliver(FileEvent(os.fsdecode(event.src_path), ListenEvent.CREATE))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watch.deliver(FileEvent(os.fsdecode(event.src_path), ListenEvent.WRITE))

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._watch.is_watched_directory(event.src_path):
            self._watch.report_directory_gone()
            return
        # Browsers replace files by writing a temporary copy and renaming it.
        if not event.is_directory:
            self._watch.deliver(FileEvent(os.fsdecode(event.dest_path), ListenEvent.CREATE))

    def on_deleted(self, event: FileSystemEvent) -> None:
        # inotify reports the watched directory itself as a file or directory event.
        if self._watch.is_watched_directory(event.src_path):
            self._watch.report_directory_gone()


class DirectoryWatch:
    """Non-recursive watch on one directory, consumed from the event loop.

    File events and watcher errors share a single queue, so one ``await`` on
    ``next_item()`` waits on both sources. Removing the watched directory
    ends the stream with a ``WatchFailure``; an observer that stops on its own
    ends it with ``WatchClosed``. Both are also detected by a liveness check
    every ``health_interval`` seconds, for backends that stop silently.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        *,
        health_interval: float = _HEALTH_INTERVAL,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[WatchItem] = asyncio.Queue()
        self._closed = False
        self._directory: str | None = None
        self._ended = threading.Event()
        self._health_interval = health_interval
        try:
            self._observer = Observer()
        except OSError as exc:
            raise WatcherSetupFailed(f"error while creating file system watcher: {exc}") from exc
        self._handler = _QueueingHandler(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def arm(self, directory: str) -> None:
        if not Path(directory).is_dir():
            raise DirectoryWatchFailed(f"error while listening to {directory}: not a directory")
        self._directory = os.path.abspath(directory)
        try:
            self._observer.schedule(self._handler, directory, recursive=False)
            self._observer.start()
        except OSError as exc:
            self._directory = None
            raise DirectoryWatchFailed(f"error while listening to {directory}: {exc}") from exc
        logger.debug("Listening to %s", directory)

    def is_watched_directory(self, path: str | bytes) -> bool:
        return self._directory is not None and os.path.abspath(os.fsdecode(path)) == self._directory

    def report_directory_gone(self) -> None:
        """Ends the stream with a failure; only the first report is delivered."""
        if self._ended.is_set():
            return
        self._ended.set()
        error = FileNotFoundError(errno.ENOENT, "watched directory was removed", self._directory)
        logger.warning("Watched directory %s was removed", self._directory)
        self.deliver(WatchFailure(error))

    def _report_stopped(self) -> None:
        if self._ended.is_set():
            return
        self._ended.set()
        logger.warning("File system watcher for %s stopped", self._directory)
        self._queue.put_nowait(WatchClosed("events"))

    def _check_health(self) -> None:
        if self._directory is None or self._closed:
            return
        if not os.path.isdir(self._directory):
            self.report_directory_gone()
        elif not self._observer.is_alive() or not any(e.is_alive() for e in self._observer.emitters):
            self._report_stopped()

    def deliver(self, item: WatchItem) -> None:
        """Thread-safe enqueue, used by the observer thread."""
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Dropping %r, event loop is closed", item)

    async def next_item(self) -> WatchItem:
        while True:
            try:
                return await asyncio.wait_for(self._queue.get(), self._health_interval)
            except asyncio.TimeoutError:
                self._check_health()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._observer.is_alive():
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, _JOIN_TIMEOUT)
        self._queue.put_nowait(WatchClosed("events"))
