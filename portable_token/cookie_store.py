from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import suppress
from pathlib import Path

from sqlalchemy import Boolean, Column, Integer, Text, create_engine, select
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base

from portable_token.cookies import Cookie, CookieReader, ExpiryUnit, expiry_from_epoch, same_site_from_raw
from portable_token.errors import CookieFileError, CookieStoreError

logger = logging.getLogger(__name__)

Base = declarative_base()


class MozCookie(Base):
    """Subset of the ``moz_cookies`` table of ``cookies.sqlite``."""

    __tablename__ = "moz_cookies"

    id = Column(Integer, primary_key=True)
    name = Column(Text)
    value = Column(Text)
    host = Column(Text)
    path = Column(Text)
    expiry = Column(Integer)
    is_secure = Column("isSecure", Boolean)
    is_http_only = Column("isHttpOnly", Boolean)
    same_site = Column("sameSite", Integer)


class SqliteCookieReader(CookieReader):
    """Reads the ``Data/profile/cookies.sqlite`` database.

    The running browser keeps the database locked, so by default it is copied
    to a temporary file before it is opened.
    """

    def __init__(self, *, copy_to_temp: bool = True, expiry_unit: ExpiryUnit = "seconds") -> None:
        self.copy_to_temp = copy_to_temp
        self.expiry_unit = expiry_unit

    def read(self, path: str | Path) -> list[Cookie]:
        source = Path(path)
        if not source.is_file():
            raise CookieFileError(f"cookie database {source} does not exist")
        if not self.copy_to_temp:
            return self._query(source)

        fd, temp_name = tempfile.mkstemp(suffix=".sqlite")
        os.close(fd)
        try:
            try:
                shutil.copy2(source, temp_name)
            except OSError as exc:
                raise CookieFileError(f"error while copying {source}: {exc}") from exc
            return self._query(Path(temp_name))
        finally:
            with suppress(OSError):
                os.unlink(temp_name)

    def _query(self, database: Path) -> list[Cookie]:
        engine = create_engine(URL.create("sqlite", database=str(database)))
        try:
            with Session(engine) as session:
                rows = session.scalars(select(MozCookie).order_by(MozCookie.id)).all()
                cookies = [self._to_cookie(row) for row in rows]
        except SQLAlchemyError as exc:
            raise CookieStoreError(f"error while reading cookies from {database}: {exc}") from exc
        finally:
            engine.dispose()
        logger.debug("Read %d cookies from %s", len(cookies), database)
        return cookies

    def _to_cookie(self, row: MozCookie) -> Cookie:
        raw_same_site = row.same_site or 0
        return Cookie(
            name=row.name or "",
            value=row.value or "",
            domain=row.host or "",
            path=row.path or "",
            secure=bool(row.is_secure),
            http_only=bool(row.is_http_only),
            same_site=same_site_from_raw(raw_same_site),
            same_site_raw=raw_same_site,
            expires=expiry_from_epoch(row.expiry, self.expiry_unit),
        )

