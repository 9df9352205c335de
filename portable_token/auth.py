from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import aiohttp
import jwt
from pydantic import AnyHttpUrl

from portable_token.errors import TokenValidationError

logger = logging.getLogger(__name__)

_STALE_STATUSES = frozenset({401, 403})
_SCHEMES = ("Bearer ", "JWT ")


def split_scheme(token: str) -> tuple[str | None, str]:
    """Split ``"JWT abc"`` into ``("JWT", "abc")``; bare tokens have no scheme."""
    for scheme in _SCHEMES:
        if token.startswith(scheme):
            return scheme.strip(), token[len(scheme):]
    return None, token


class TokenValidator:
    """Decides whether a bearer token is still fresh.

    With a ``probe_url`` the token is presented to the remote service and a
    401/403 answer marks it as expired. Without one the token must be a JWT and
    its ``exp`` claim is compared with the current time.
    """

    def __init__(
        self,
        *,
        probe_url: AnyHttpUrl | str | None = None,
        leeway_seconds: float = 60.0,
        timeout: float = 20.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._probe_url = str(probe_url) if probe_url else None
        self._leeway = timedelta(seconds=leeway_seconds)
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    async def is_fresh(self, token: str) -> bool:
        if self._probe_url:
            return await self._probe(token)
        return self._check_expiry(token)

    async def _probe(self, token: str) -> bool:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        scheme, value = split_scheme(token)
        headers = {"Authorization": f"{scheme or 'Bearer'} {value}"}

        logger.debug("Probing %s to validate token", self._probe_url)
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with self._session.get(self._probe_url, headers=headers, timeout=timeout) as response:
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TokenValidationError(f"token probe to {self._probe_url} failed: {exc}") from exc

        if status in _STALE_STATUSES:
            logger.debug("Token rejected by %s with %d", self._probe_url, status)
            return False
        if status >= 400:
            raise TokenValidationError(f"token probe to {self._probe_url} returned {status}")
        return True

    def _check_expiry(self, token: str) -> bool:
        _, value = split_scheme(token)
        try:
            claims = jwt.decode(value, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise TokenValidationError(f"token is not a decodable JWT: {exc}") from exc

        exp = claims.get("exp")
        if exp is None:
            return True
        try:
            expires_at = datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise TokenValidationError(f"token carries an invalid exp claim: {exp!r}") from exc
        return datetime.now(timezone.utc) < expires_at - self._leeway
