from __future__ import annotations

import enum
from abc import ABC, abstractmethod


class ListenEvent(enum.Flag):
    """Directory events a token extractor reacts to."""

    CREATE = 1
    WRITE = 2


class TokenExtractor(ABC):
    """Format-specific knowledge of where a bearer token lives and how to check it."""

    @abstractmethod
    def get_listen_event(self) -> ListenEvent:
        """Events on the credential file that should trigger a new parse."""

    @abstractmethod
    def get_login_url(self) -> str:
        """Page the user can visit to enter their credentials manually."""

    @abstractmethod
    def get_file_path(self) -> str:
        """Path of the credential file, relative to the portable browser root."""

    @abstractmethod
    async def parse(self, path: str) -> str:
        """Read a file shaped like ``get_file_path()`` and return the token in it.

        Raise when the file cannot be read or carries no token.
        """

    @abstractmethod
    async def validate(self, token: str) -> bool:
        """Return ``False`` when the token is expired.

        A token is expired when requests made with it are answered with
        401 Unauthorized or 403 Forbidden. Raise only when freshness cannot be
        determined at all.
        """
