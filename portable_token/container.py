from __future__ import annotations

import json
import logging
import struct
from pathlib import Path
from typing import Any

import lz4.block
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from portable_token.cookies import Cookie, CookieReader, ExpiryUnit, expiry_from_epoch, same_site_from_raw
from portable_token.errors import (
    CookieFileError,
    CorruptPayload,
    DecompressionFailed,
    MalformedContainer,
    MalformedContent,
)

logger = logging.getLogger(__name__)

MOZLZ4_MAGIC = b"mozLz40\0"
_SIZE_HINT = struct.Struct("<I")
# Size hints above this are never trusted; probing takes over instead.
MAX_TRUSTED_SIZE = 256 * 1024 * 1024


class _RawCookie(BaseModel):
    """Cookie record as written in the session store; bad fields fall back to defaults."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    expiry: float = 0
    host: str = ""
    http_only: bool = Field(False, alias="httponly")
    name: str = ""
    path: str = ""
    same_site: int = Field(0, alias="sameSite")
    secure: bool = False
    value: str = ""

    @field_validator("*", mode="wrap")
    @classmethod
    def _default_on_error(cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return cls.model_fields[info.field_name].get_default()


class _SessionDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cookies: list[_RawCookie] = Field(default_factory=list)


class ContainerDecoder:
    """Decodes mozLz4 session-store containers into cookies.

    The size hint that follows the magic region is trusted first. Producers
    have not always written it reliably, so when the hinted size does not
    reproduce the payload the decoder probes destination sizes that are
    multiples of the compressed length, from ``probe_factor_min`` up to
    ``probe_factor_max``.
    """

    def __init__(
        self,
        *,
        magic_length: int = len(MOZLZ4_MAGIC),
        probe_factor_min: int = 5,
        probe_factor_max: int = 30,
        probe_factor_step: int = 5,
        expiry_unit: ExpiryUnit = "milliseconds",
    ) -> None:
        if probe_factor_step <= 0:
            raise ValueError("probe_factor_step must be positive")
        if probe_factor_min <= 0 or probe_factor_min > probe_factor_max:
            raise ValueError("probe factor range must satisfy 0 < min <= max")
        self.magic_length = magic_length
        self.probe_factor_min = probe_factor_min
        self.probe_factor_max = probe_factor_max
        self.probe_factor_step = probe_factor_step
        self.expiry_unit = expiry_unit

    def decode(self, raw: bytes) -> list[Cookie]:
        header_length = self.magic_length + _SIZE_HINT.size
        if len(raw) < header_length:
            raise MalformedContainer(
                f"container holds {len(raw)} bytes, at least {header_length} are required"
            )
        (size_hint,) = _SIZE_HINT.unpack_from(raw, self.magic_length)
        payload = bytes(raw[header_length:])
        if not payload:
            raise CorruptPayload("container has no compressed payload")

        decompressed = self._decompress_trusted(payload, size_hint)
        if decompressed is None:
            decompressed = self._decompress_probing(payload)
        return self._parse(decompressed)

    def _decompress_trusted(self, payload: bytes, size_hint: int) -> bytes | None:
        if size_hint == 0 or size_hint > MAX_TRUSTED_SIZE:
            logger.debug("Ignoring untrusted size hint %d", size_hint)
            return None
        try:
            decompressed = lz4.block.decompress(payload, uncompressed_size=size_hint)
        except lz4.block.LZ4BlockError as exc:
            logger.debug("Size hint %d rejected by decompressor: %s", size_hint, exc)
            return None
        if len(decompressed) != size_hint:
            logger.debug("Size hint %d does not match decompressed length %d", size_hint, len(decompressed))
            return None
        return decompressed

    def _decompress_probing(self, payload: bytes) -> bytes:
        last_error: Exception | None = None
        for factor in range(self.probe_factor_min, self.probe_factor_max + 1, self.probe_factor_step):
            try:
                decompressed = lz4.block.decompress(payload, uncompressed_size=len(payload) * factor)
            except lz4.block.LZ4BlockError as exc:
                # Destination too small and corrupt input are indistinguishable here.
                last_error = exc
                continue
            if not decompressed:
                raise CorruptPayload("compressed block decodes to an empty payload")
            logger.debug("Decompressed %d bytes with probe factor %d", len(decompressed), factor)
            return decompressed
        raise DecompressionFailed(
            f"no destination size up to {self.probe_factor_max}x the compressed length "
            f"({len(payload)} bytes) decompressed the payload: {last_error}"
        )

    def _parse(self, decompressed: bytes) -> list[Cookie]:
        try:
            document = _SessionDocument.model_validate_json(decompressed)
        except ValidationError as exc:
            raise MalformedContent(f"decompressed payload is not a session-store document: {exc}") from exc
        return [self._to_cookie(raw) for raw in document.cookies]

    def _to_cookie(self, raw: _RawCookie) -> Cookie:
        return Cookie(
            name=raw.name,
            value=raw.value,
            domain=raw.host,
            path=raw.path,
            secure=raw.secure,
            http_only=raw.http_only,
            same_site=same_site_from_raw(raw.same_site),
            same_site_raw=raw.same_site,
            expires=expiry_from_epoch(raw.expiry, self.expiry_unit),
        )


class MozLz4CookieReader(CookieReader):
    """Reads cookies from ``Data/profile/sessionstore-backups/recovery.jsonlz4``."""

    def __init__(self, decoder: ContainerDecoder | None = None) -> None:
        self.decoder = decoder or ContainerDecoder()

    def read(self, path: str | Path) -> list[Cookie]:
        try:
            raw = Path(path).read_bytes()
        except OSError as exc:
            raise CookieFileError(f"error while reading {path}: {exc}") from exc
        cookies = self.decoder.decode(raw)
        logger.debug("Decoded %d cookies from %s", len(cookies), path)
        return cookies


def encode_container(document: Any, *, magic: bytes = MOZLZ4_MAGIC, size_hint: int | None = None) -> bytes:
    """Build a container around a JSON document, as the browser writes it."""
    data = json.dumps(document).encode("utf-8")
    block = lz4.block.compress(data, store_size=False)
    hint = len(data) if size_hint is None else size_hint
    return magic + _SIZE_HINT.pack(hint) + block
