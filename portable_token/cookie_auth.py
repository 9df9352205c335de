from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Callable

from portable_token.auth import TokenValidator
from portable_token.cookies import CookieReader
from portable_token.errors import TokenNotFound
from portable_token.extractor import ListenEvent, TokenExtractor

logger = logging.getLogger(__name__)


def default_token_extractor(raw_cookie: str) -> str | None:
    """
    Default token extractor.
    Extract a bearer token from an encoded cookie payload.
    Supports JSON envelope {"auth":{"token":"<token>"}} or raw JWT string.
    """
    decoded = urllib.parse.unquote(raw_cookie)
    # A raw JWT has three dot-separated parts.
    if decoded.count(".") == 2 and " " not in decoded.strip():
        return decoded.strip()

    try:
        payload = json.loads(decoded)
    except ValueError as exc:
        logger.debug("Failed to decode cookie auth token: %s", exc)
        return None
    if not isinstance(payload, dict):
        return None
    auth = payload.get("auth")
    token = auth.get("token") if isinstance(auth, dict) else None
    if isinstance(token, str) and token:
        return token
    return None


class CookieTokenExtractor(TokenExtractor):
    """Takes the bearer token from a named cookie of a browser profile file."""

    def __init__(
        self,
        reader: CookieReader,
        *,
        file_path: str,
        cookie_name: str,
        login_url: str,
        validator: TokenValidator,
        listen_event: ListenEvent = ListenEvent.CREATE | ListenEvent.WRITE,
        token_decoder: Callable[[str], str | None] | None = None,
    ) -> None:
        self.reader = reader
        self.file_path = file_path
        self.cookie_name = cookie_name
        self.login_url = login_url
        self.validator = validator
        self.listen_event = listen_event
        self.token_decoder = token_decoder or default_token_extractor

    def get_listen_event(self) -> ListenEvent:
        return self.listen_event

    def get_login_url(self) -> str:
        return self.login_url

    def get_file_path(self) -> str:
        return self.file_path

    async def parse(self, path: str) -> str:
        cookies = await asyncio.to_thread(self.reader.read, path)
        matches = [cookie for cookie in cookies if cookie.name == self.cookie_name]
        if not matches:
            raise TokenNotFound(f"cookie {self.cookie_name!r} not found in {path}")
        # Last occurrence wins.
        token = self.token_decoder(matches[-1].value)
        if not token:
            raise TokenNotFound(f"cookie {self.cookie_name!r} in {path} carries no token")
        return token

    async def validate(self, token: str) -> bool:
        return await self.validator.is_fresh(token)
