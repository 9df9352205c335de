from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ExpiryUnit = Literal["seconds", "milliseconds"]

# Raw sameSite value the browser writes for cookies without an explicit attribute.
_RAW_SAME_SITE_DEFAULT = 1


class SameSite(str, enum.Enum):
    UNSPECIFIED = "unspecified"
    DEFAULT = "default"
    LAX = "lax"
    STRICT = "strict"


class Cookie(BaseModel):
    """One HTTP cookie recovered from a browser profile."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    domain: str = ""
    path: str = ""
    secure: bool = False
    http_only: bool = False
    same_site: SameSite = SameSite.UNSPECIFIED
    same_site_raw: int = 0
    expires: datetime | None = None


class CookieReader(ABC):
    """Reads every cookie stored in a browser profile file."""

    @abstractmethod
    def read(self, path: str | Path) -> list[Cookie]:
        pass


def join_cookie_header(cookies: Iterable[Cookie]) -> str:
    """Format cookies as ``name: value`` pairs separated by ``; ``."""
    return "; ".join(f"{cookie.name}: {cookie.value}" for cookie in cookies)


def same_site_from_raw(raw: int) -> SameSite:
    # Only the "default" marker is distinguished; the raw value is kept on the cookie.
    if raw == _RAW_SAME_SITE_DEFAULT:
        return SameSite.DEFAULT
    return SameSite.UNSPECIFIED


def expiry_from_epoch(value: float | int | None, unit: ExpiryUnit = "milliseconds") -> datetime | None:
    """Convert an epoch timestamp to an aware UTC datetime, ``None`` for session cookies."""
    if not value or value <= 0:
        return None
    seconds = value / 1000 if unit == "milliseconds" else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug("Ignoring out of range cookie expiry %r (%s)", value, unit)
        return None
