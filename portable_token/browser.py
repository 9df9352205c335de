from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from portable_token.errors import (
    BrowserLaunchFailed,
    CacheCheckFailed,
    WatchClosedUnexpectedly,
    WatchError,
    WatchObservationFailed,
    WatchTimeout,
)
from portable_token.extractor import TokenExtractor
from portable_token.watch import DirectoryWatch, WatchClosed, WatchFailure

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "FirefoxPortable.exe"
_REAP_TIMEOUT = 5.0


@dataclass
class LoadOptions:
    # Launch the browser on the login page when no fresh token is stored locally.
    open_browser: bool = False
    # Called once, right before the watch is armed. Never called when the stored token is fresh.
    on_start_listening: Callable[[], None] | None = None
    logger: logging.Logger | None = None
    # Seconds to wait for a fresh token; ``None`` waits indefinitely.
    timeout: float | None = None
    # Raise WatchClosedUnexpectedly instead of returning "" when the watch stops delivering events.
    strict_close: bool = False


def launch_process(args: list[str]) -> subprocess.Popen:
    """Start the browser in its own process group, detached from the caller's console."""
    kwargs: dict[str, Any] = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    return subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        **kwargs,
    )


class BrowserProcess:
    """Launched browser, killed on release.

    Killing is a convenience: if it fails the user can close the window
    themselves, so failures are logged and never raised. Releasing twice or
    releasing an exited process is fine.
    """

    def __init__(self, process: subprocess.Popen, log: logging.Logger = logger) -> None:
        self._process = process
        self._log = log
        self._lock = threading.Lock()
        self._released = False

    @property
    def pid(self) -> int:
        return self._process.pid

    def __enter__(self) -> BrowserProcess:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True

        pid = self._process.pid
        returncode = self._process.poll()
        if returncode is not None:
            self._log.info("Browser process %d already exited with code %s", pid, returncode)
            return
        try:
            self._process.kill()
        except OSError as exc:
            self._log.warning("Kill returned an error for PID %d: %s", pid, exc)
            return
        try:
            self._process.wait(timeout=_REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            self._log.warning("Browser process %d did not exit after kill", pid)
            return
        self._log.info("Kill has been called successfully on PID %d", pid)


class PortableBrowser:
    """A portable Firefox installation that can hand out a bearer token."""

    def __init__(
        self,
        path: str | Path,
        executable_name: str = DEFAULT_EXECUTABLE,
        *,
        watch_factory: Callable[[], DirectoryWatch] = DirectoryWatch,
        launcher: Callable[[list[str]], subprocess.Popen] = launch_process,
    ) -> None:
        self.path = Path(path)
        self.executable_name = executable_name
        self._watch_factory = watch_factory
        self._launcher = launcher

    @property
    def executable_path(self) -> Path:
        return self.path / self.executable_name

    async def load(self, extractor: TokenExtractor, options: LoadOptions | None = None) -> str:
        """Return a fresh bearer token, waiting for the browser to produce one if needed.

        The token stored on disk is returned right away when it is still fresh.
        Otherwise the credential file's directory is watched until a fresh
        token is written, optionally after opening the login page. An empty
        string is returned when the watch stops without an error and without
        a token, unless ``options.strict_close`` is set.
        """
        options = options or LoadOptions()
        log = options.logger or logger
        target = self.path / extractor.get_file_path()

        cached = await self._check_cache(extractor, target, log)
        if cached is not None:
            return cached

        async with AsyncExitStack() as stack:
            if options.open_browser:
                process = self._launch(extractor, log)
                # Reaping waits on the process, so it runs in a worker thread.
                stack.push_async_callback(asyncio.to_thread, process.release)

            watch = self._watch_factory()
            stack.push_async_callback(watch.aclose)
            if options.on_start_listening is not None:
                options.on_start_listening()
            watch.arm(str(target.parent))

            task = asyncio.create_task(self._observe(watch, extractor, target, options, log))
            try:
                return await asyncio.wait_for(task, options.timeout)
            except asyncio.TimeoutError as exc:
                raise WatchTimeout(f"no fresh token was written to {target} within {options.timeout}s") from exc

    async def _check_cache(self, extractor: TokenExtractor, target: Path, log: logging.Logger) -> str | None:
        try:
            token = await extractor.parse(str(target))
        except Exception as exc:
            log.debug("No usable token stored in %s: %s", target, exc)
            return None
        try:
            fresh = await extractor.validate(token)
        except Exception as exc:
            raise CacheCheckFailed(f"error while checking if the token found is fresh: {exc}") from exc
        if fresh:
            log.debug("Token stored in %s is fresh", target)
            return token
        log.info("Token stored in %s is expired", target)
        return None

    def _launch(self, extractor: TokenExtractor, log: logging.Logger) -> BrowserProcess:
        args = [str(self.executable_path), "-new-tab", extractor.get_login_url()]
        try:
            process = self._launcher(args)
        except OSError as exc:
            raise BrowserLaunchFailed(f"error while launching the browser: {exc}") from exc
        log.info("Launched %s with PID %d", self.executable_path, process.pid)
        return BrowserProcess(process, log)

    async def _observe(
        self,
        watch: DirectoryWatch,
        extractor: TokenExtractor,
        target: Path,
        options: LoadOptions,
        log: logging.Logger,
    ) -> str:
        # Sole writer of the session result: the return value or raised error of this task.
        listen_event = extractor.get_listen_event()
        while True:
            item = await watch.next_item()
            if isinstance(item, WatchClosed):
                if options.strict_close:
                    raise WatchClosedUnexpectedly(f"{item.source} stream closed before a fresh token was found")
                log.warning("Watch %s stream closed before a fresh token was found", item.source)
                return ""
            if isinstance(item, WatchFailure):
                raise WatchError(f"error while watching {target.parent}: {item.error}") from item.error
            if not item.kind & listen_event or Path(item.path).name != target.name:
                continue

            try:
                token = await extractor.parse(item.path)
                fresh = await extractor.validate(token)
            except Exception as exc:
                raise WatchObservationFailed(f"error while trying to retrieve the bearer token: {exc}") from exc
            if fresh:
                log.info("Fresh token written to %s", item.path)
                return token
            # Keep listening until a fresh token shows up.
            log.info("Token written to %s is expired, still listening", item.path)
