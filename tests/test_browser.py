import asyncio
import logging
import shutil
import threading

import pytest

from portable_token.browser import BrowserProcess, LoadOptions, PortableBrowser
from portable_token.errors import (
    BrowserLaunchFailed,
    CacheCheckFailed,
    DirectoryWatchFailed,
    WatchClosedUnexpectedly,
    WatchError,
    WatchObservationFailed,
    WatchTimeout,
)
from portable_token.extractor import ListenEvent, TokenExtractor
from portable_token.watch import DirectoryWatch, FileEvent, WatchClosed, WatchFailure

FILE_PATH = "Data/profile/token.json"


class FakeExtractor(TokenExtractor):
    """Returns queued parse results in order; tokens starting with "fresh" are valid."""

    def __init__(self, results, *, listen_event=ListenEvent.CREATE | ListenEvent.WRITE, validate_error=None):
        self.results = list(results)
        self.listen_event = listen_event
        self.validate_error = validate_error
        self.parsed = []
        self.validated = []

    def get_listen_event(self):
        return self.listen_event

    def get_login_url(self):
        return "https://app.example.com/login"

    def get_file_path(self):
        return FILE_PATH

    async def parse(self, path):
        self.parsed.append(path)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def validate(self, token):
        self.validated.append(token)
        if self.validate_error:
            raise self.validate_error
        return token.startswith("fresh")


class FakeWatch:
    def __init__(self, items=(), arm_error=None, journal=None):
        self.queue = asyncio.Queue()
        for item in items:
            self.queue.put_nowait(item)
        self.arm_error = arm_error
        self.journal = journal if journal is not None else []
        self.armed = None
        self.closed = False

    def arm(self, directory):
        self.journal.append("arm")
        if self.arm_error:
            raise self.arm_error
        self.armed = directory

    async def next_item(self):
        return await self.queue.get()

    async def aclose(self):
        self.journal.append("close")
        self.closed = True


class WatchFactory:
    def __init__(self, watch):
        self.watch = watch
        self.created = 0

    def __call__(self):
        self.created += 1
        return self.watch


class FakeProcess:
    pid = 4242

    def __init__(self, returncode=None, kill_error=None):
        self.returncode = returncode
        self.kill_error = kill_error
        self.killed = 0

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed += 1
        if self.kill_error:
            raise self.kill_error
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class Launcher:
    def __init__(self, process=None, error=None):
        self.process = process or FakeProcess()
        self.error = error
        self.calls = []

    def __call__(self, args):
        self.calls.append(args)
        if self.error:
            raise self.error
        return self.process


def _event(tmp_path, kind=ListenEvent.WRITE, name="token.json"):
    return FileEvent(str(tmp_path / "Data" / "profile" / name), kind)


def _browser(tmp_path, watch, launcher=None):
    factory = WatchFactory(watch)
    browser = PortableBrowser(tmp_path, watch_factory=factory, launcher=launcher or Launcher())
    return browser, factory


@pytest.mark.asyncio
async def test_fresh_cached_token_skips_watch(tmp_path):
    calls = []
    browser, factory = _browser(tmp_path, FakeWatch())
    extractor = FakeExtractor(["fresh-cached"])

    token = await browser.load(extractor, LoadOptions(on_start_listening=lambda: calls.append("listening")))

    assert token == "fresh-cached"
    assert factory.created == 0
    assert calls == []
    assert extractor.parsed == [str(tmp_path / FILE_PATH)]


@pytest.mark.asyncio
async def test_expired_token_waits_for_fresh_write(tmp_path):
    journal = []
    watch = FakeWatch([_event(tmp_path), _event(tmp_path)], journal=journal)
    browser, factory = _browser(tmp_path, watch)
    extractor = FakeExtractor(["stale-cached", "stale-observed", "fresh-observed"])

    token = await browser.load(extractor, LoadOptions(on_start_listening=lambda: journal.append("listening")))

    assert token == "fresh-observed"
    assert factory.created == 1
    assert journal == ["listening", "arm", "close"]
    assert watch.armed == str(tmp_path / "Data" / "profile")
    assert extractor.validated == ["stale-cached", "stale-observed", "fresh-observed"]


@pytest.mark.asyncio
async def test_missing_cached_token_starts_watch(tmp_path):
    watch = FakeWatch([_event(tmp_path, ListenEvent.CREATE)])
    browser, _ = _browser(tmp_path, watch)
    extractor = FakeExtractor([FileNotFoundError("no file"), "fresh-token"])

    assert await browser.load(extractor) == "fresh-token"
    assert watch.closed


@pytest.mark.asyncio
async def test_stale_write_does_not_resolve(tmp_path):
    watch = FakeWatch([_event(tmp_path)])
    browser, _ = _browser(tmp_path, watch)
    extractor = FakeExtractor(["stale-cached", "stale-observed"])

    with pytest.raises(WatchTimeout):
        await browser.load(extractor, LoadOptions(timeout=0.2))
    assert extractor.parsed[-1] == str(tmp_path / FILE_PATH)
    assert watch.closed


@pytest.mark.asyncio
async def test_closed_event_source_returns_empty_token(tmp_path):
    watch = FakeWatch([WatchClosed("events")])
    browser, _ = _browser(tmp_path, watch)

    assert await browser.load(FakeExtractor(["stale-cached"])) == ""
    assert watch.closed


@pytest.mark.asyncio
async def test_closed_error_source_returns_empty_token(tmp_path):
    watch = FakeWatch([WatchClosed("errors")])
    browser, _ = _browser(tmp_path, watch)

    assert await browser.load(FakeExtractor(["stale-cached"])) == ""


@pytest.mark.asyncio
async def test_strict_close_raises(tmp_path):
    watch = FakeWatch([WatchClosed("events")])
    browser, _ = _browser(tmp_path, watch)

    with pytest.raises(WatchClosedUnexpectedly):
        await browser.load(FakeExtractor(["stale-cached"]), LoadOptions(strict_close=True))
    assert watch.closed


@pytest.mark.asyncio
async def test_watch_error_is_surfaced(tmp_path):
    boom = OSError("inotify overflow")
    watch = FakeWatch([WatchFailure(boom)])
    browser, _ = _browser(tmp_path, watch)

    with pytest.raises(WatchError) as exc_info:
        await browser.load(FakeExtractor(["stale-cached"]))
    assert exc_info.value.__cause__ is boom
    assert watch.closed


@pytest.mark.asyncio
async def test_observed_parse_error_fails(tmp_path):
    parse_error = ValueError("half written")
    watch = FakeWatch([_event(tmp_path)])
    browser, _ = _browser(tmp_path, watch)

    with pytest.raises(WatchObservationFailed) as exc_info:
        await browser.load(FakeExtractor(["stale-cached", parse_error]))
    assert exc_info.value.__cause__ is parse_error
    assert watch.closed


@pytest.mark.asyncio
async def test_observed_validate_error_fails(tmp_path):
    watch = FakeWatch([_event(tmp_path)])
    browser, _ = _browser(tmp_path, watch)
    extractor = FakeExtractor([FileNotFoundError(), "fresh-token"], validate_error=RuntimeError("api down"))

    with pytest.raises(WatchObservationFailed):
        await browser.load(extractor)


@pytest.mark.asyncio
async def test_cache_validate_error_fails_before_watching(tmp_path):
    browser, factory = _browser(tmp_path, FakeWatch())
    extractor = FakeExtractor(["cached"], validate_error=RuntimeError("api down"))

    with pytest.raises(CacheCheckFailed):
        await browser.load(extractor)
    assert factory.created == 0


@pytest.mark.asyncio
async def test_irrelevant_events_are_ignored(tmp_path):
    watch = FakeWatch(
        [
            _event(tmp_path, name="other.json"),
            _event(tmp_path, kind=ListenEvent.WRITE),
            _event(tmp_path, kind=ListenEvent.CREATE),
        ]
    )
    browser, _ = _browser(tmp_path, watch)
    extractor = FakeExtractor(["stale-cached", "fresh-token"], listen_event=ListenEvent.CREATE)

    assert await browser.load(extractor) == "fresh-token"
    assert len(extractor.parsed) == 2


@pytest.mark.parametrize(
    "results, expected, leftover",
    [
        (["fresh-first", "stale-second"], "fresh-first", 1),
        (["stale-first", "fresh-second"], "fresh-second", 0),
        (["fresh-first", "fresh-second"], "fresh-first", 1),
    ],
)
@pytest.mark.asyncio
async def test_rapid_events_resolve_once(tmp_path, results, expected, leftover):
    watch = FakeWatch([_event(tmp_path), _event(tmp_path)])
    browser, _ = _browser(tmp_path, watch)
    extractor = FakeExtractor(["stale-cached", *results])

    token = await asyncio.wait_for(browser.load(extractor), timeout=5)

    assert token == expected
    assert watch.queue.qsize() == leftover
    assert len(extractor.parsed) == 1 + len(results) - leftover


@pytest.mark.asyncio
async def test_open_browser_launches_and_kills(tmp_path):
    launcher = Launcher()
    browser, _ = _browser(tmp_path, FakeWatch([_event(tmp_path)]), launcher)
    extractor = FakeExtractor(["stale-cached", "fresh-token"])

    assert await browser.load(extractor, LoadOptions(open_browser=True)) == "fresh-token"
    assert launcher.calls == [
        [str(tmp_path / "FirefoxPortable.exe"), "-new-tab", "https://app.example.com/login"],
    ]
    assert launcher.process.killed == 1


@pytest.mark.asyncio
async def test_browser_not_launched_when_cached_token_fresh(tmp_path):
    launcher = Launcher()
    browser, _ = _browser(tmp_path, FakeWatch(), launcher)

    await browser.load(FakeExtractor(["fresh-cached"]), LoadOptions(open_browser=True))
    assert launcher.calls == []


@pytest.mark.asyncio
async def test_browser_launch_failure(tmp_path):
    launcher = Launcher(error=FileNotFoundError("no executable"))
    browser, factory = _browser(tmp_path, FakeWatch(), launcher)

    with pytest.raises(BrowserLaunchFailed):
        await browser.load(FakeExtractor(["stale-cached"]), LoadOptions(open_browser=True))
    assert factory.created == 0


@pytest.mark.asyncio
async def test_browser_killed_when_watch_fails(tmp_path):
    launcher = Launcher()
    watch = FakeWatch(arm_error=DirectoryWatchFailed("missing directory"))
    browser, _ = _browser(tmp_path, watch, launcher)

    with pytest.raises(DirectoryWatchFailed):
        await browser.load(FakeExtractor(["stale-cached"]), LoadOptions(open_browser=True))
    assert watch.closed
    assert launcher.process.killed == 1


@pytest.mark.asyncio
async def test_kill_failure_is_not_an_error(tmp_path, caplog):
    launcher = Launcher(FakeProcess(kill_error=ProcessLookupError("gone")))
    browser, _ = _browser(tmp_path, FakeWatch([_event(tmp_path)]), launcher)
    extractor = FakeExtractor(["stale-cached", "fresh-token"])

    with caplog.at_level(logging.WARNING):
        assert await browser.load(extractor, LoadOptions(open_browser=True)) == "fresh-token"
    assert "4242" in caplog.text


@pytest.mark.asyncio
async def test_custom_logger_receives_messages(tmp_path, caplog):
    custom = logging.getLogger("custom.watch")
    browser, _ = _browser(tmp_path, FakeWatch([WatchClosed("events")]))

    with caplog.at_level(logging.WARNING, logger="custom.watch"):
        await browser.load(FakeExtractor(["stale-cached"]), LoadOptions(logger=custom))
    assert any(record.name == "custom.watch" for record in caplog.records)


def test_release_is_idempotent():
    process = FakeProcess()
    handle = BrowserProcess(process)
    handle.release()
    handle.release()
    assert process.killed == 1


def test_release_skips_exited_process():
    process = FakeProcess(returncode=0)
    with BrowserProcess(process) as handle:
        assert handle.pid == 4242
    assert process.killed == 0


def test_executable_path(tmp_path):
    browser = PortableBrowser(tmp_path, "Firefox.exe")
    assert browser.executable_path == tmp_path / "Firefox.exe"


@pytest.mark.asyncio
async def test_load_with_real_directory_watch(tmp_path):
    target = tmp_path / FILE_PATH
    target.parent.mkdir(parents=True)
    target.write_text("stale-cached")

    class FileExtractor(FakeExtractor):
        async def parse(self, path):
            self.parsed.append(path)
            with open(path, encoding="utf-8") as handle:
                return handle.read()

    def write_fresh_token():
        asyncio.get_running_loop().call_later(0.3, target.write_text, "fresh-from-browser")

    browser = PortableBrowser(tmp_path, watch_factory=DirectoryWatch)
    options = LoadOptions(on_start_listening=write_fresh_token, timeout=10)

    assert await browser.load(FileExtractor([]), options) == "fresh-from-browser"


@pytest.mark.asyncio
async def test_removed_watch_directory_fails_load(tmp_path):
    watched = tmp_path / "Data" / "profile"
    watched.mkdir(parents=True)

    def remove_directory():
        asyncio.get_running_loop().call_later(0.3, shutil.rmtree, watched)

    browser = PortableBrowser(tmp_path, watch_factory=lambda: DirectoryWatch(health_interval=0.2))
    options = LoadOptions(on_start_listening=remove_directory, timeout=10)

    with pytest.raises(WatchError) as excinfo:
        await browser.load(FakeExtractor([FileNotFoundError("no token yet")]), options)
    assert isinstance(excinfo.value.__cause__, FileNotFoundError)


@pytest.mark.asyncio
async def test_browser_reaped_off_event_loop(tmp_path):
    class SlowProcess(FakeProcess):
        def wait(self, timeout=None):
            self.wait_thread = threading.current_thread()
            return super().wait(timeout)

    launcher = Launcher(SlowProcess())
    browser, _ = _browser(tmp_path, FakeWatch([_event(tmp_path)]), launcher)
    extractor = FakeExtractor(["stale-cached", "fresh-token"])

    assert await browser.load(extractor, LoadOptions(open_browser=True)) == "fresh-token"
    assert launcher.process.killed == 1
    assert launcher.process.wait_thread is not threading.main_thread()
