from __future__ import annotations


class CookieReadError(Exception):
    """Base class for failures while reading cookies from a browser profile."""


class CookieFileError(CookieReadError):
    """The cookie file could not be opened or read."""


class CookieStoreError(CookieReadError):
    """The SQLite cookie database could not be queried."""


class ContainerError(CookieReadError):
    """Base class for compressed session-store container failures."""


class MalformedContainer(ContainerError):
    """The container is too short to hold the magic region and size hint."""


class CorruptPayload(ContainerError):
    """The compressed block cannot be turned into a usable payload."""


class DecompressionFailed(CorruptPayload):
    """Every probed destination size was rejected by the block decompressor."""


class MalformedContent(ContainerError):
    """The decompressed payload is not the expected session-store document."""


class TokenNotFound(Exception):
    """The credential file does not carry the requested token."""


class TokenValidationError(Exception):
    """Token freshness could not be determined."""


class TokenWatchError(Exception):
    """Base class for failures surfaced by ``PortableBrowser.load``."""


class CacheCheckFailed(TokenWatchError):
    """The validator errored while checking the token already on disk."""


class BrowserLaunchFailed(TokenWatchError):
    """The portable browser executable could not be started."""


class WatcherSetupFailed(TokenWatchError):
    """The file system watcher could not be created."""


class DirectoryWatchFailed(TokenWatchError):
    """The watcher could not be attached to the credential file's directory."""


class WatchObservationFailed(TokenWatchError):
    """Parsing or validating an observed credential file failed."""


class WatchError(TokenWatchError):
    """The file system watcher reported an error while listening."""


class WatchTimeout(TokenWatchError):
    """No fresh token was observed before the deadline."""


class WatchClosedUnexpectedly(TokenWatchError):
    """The watch stopped delivering events before a token was found."""
