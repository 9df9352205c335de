from portable_token.auth import TokenValidator
from portable_token.browser import LoadOptions, PortableBrowser
from portable_token.config import AppSettings
from portable_token.container import ContainerDecoder, MozLz4CookieReader
from portable_token.cookie_auth import CookieTokenExtractor, default_token_extractor
from portable_token.cookie_store import SqliteCookieReader
from portable_token.cookies import Cookie, CookieReader, SameSite, join_cookie_header
from portable_token.extractor import ListenEvent, TokenExtractor

__all__ = [
    "AppSettings",
    "ContainerDecoder",
    "Cookie",
    "CookieReader",
    "CookieTokenExtractor",
    "ListenEvent",
    "LoadOptions",
    "MozLz4CookieReader",
    "PortableBrowser",
    "SameSite",
    "SqliteCookieReader",
    "TokenExtractor",
    "TokenValidator",
    "default_token_extractor",
    "join_cookie_header",
]
