from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv

from portable_token.auth import TokenValidator
from portable_token.browser import LoadOptions, PortableBrowser
from portable_token.config import AppSettings
from portable_token.container import ContainerDecoder, MozLz4CookieReader
from portable_token.cookie_auth import CookieTokenExtractor
from portable_token.cookie_store import SqliteCookieReader
from portable_token.cookies import CookieReader, join_cookie_header
from portable_token.errors import CookieReadError, TokenWatchError


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_cookie_reader(settings: AppSettings, file_name: str | None = None) -> CookieReader:
    """Pick the reader matching the cookie file: SQLite database or compressed session store."""
    name = file_name or settings.profile_file_name
    if name.endswith(".sqlite"):
        return SqliteCookieReader()
    decoder = ContainerDecoder(
        probe_factor_min=settings.probe_factor_min,
        probe_factor_max=settings.probe_factor_max,
        probe_factor_step=settings.probe_factor_step,
        expiry_unit=settings.expiry_unit,
    )
    return MozLz4CookieReader(decoder)


async def _load_token(settings: AppSettings) -> str:
    validator = TokenValidator(
        probe_url=settings.probe_url,
        leeway_seconds=settings.token_leeway_seconds,
        timeout=settings.probe_timeout_seconds,
    )
    extractor = CookieTokenExtractor(
        build_cookie_reader(settings),
        file_path=settings.profile_file_path,
        cookie_name=settings.cookie_name or "",
        login_url=str(settings.login_url) if settings.login_url else "",
        validator=validator,
    )
    browser = PortableBrowser(settings.browser_path, settings.executable_name)
    options = LoadOptions(
        open_browser=settings.open_browser,
        on_start_listening=lambda: click.echo(
            f"Waiting for a fresh token in {Path(settings.browser_path) / settings.profile_file_path}", err=True
        ),
        timeout=settings.watch_timeout_seconds,
        strict_close=settings.strict_close,
    )
    try:
        return await browser.load(extractor, options)
    finally:
        await validator.close()


@click.group()
def cli() -> None:
    """Portable browser bearer token utility CLI."""


@cli.command(name="cookies", help="Print the cookies stored in a profile file")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["header", "json"]),
    default="header",
    show_default=True,
    help="Cookie header line or JSON list.",
)
@click.option("--log-level", help="Log level (default: INFO)")
def show_cookies(path: Path, output_format: str, log_level: str | None) -> None:
    load_dotenv()
    settings = AppSettings()
    _configure_logging(log_level or settings.log_level)
    reader = build_cookie_reader(settings, path.name)
    try:
        cookies = reader.read(path)
    except CookieReadError as exc:
        raise click.ClickException(str(exc)) from exc

    if output_format == "json":
        click.echo(json.dumps([cookie.model_dump(mode="json") for cookie in cookies], indent=2))
    else:
        click.echo(join_cookie_header(cookies))


@cli.command(name="token", help="Print a fresh bearer token, waiting for the browser if needed")
@click.option("--browser-path", help="Portable browser root directory")
@click.option("--file-path", help="Cookie file relative to the browser root")
@click.option("--cookie-name", help="Cookie carrying the token")
@click.option("--login-url", help="Login page to open when no fresh token is stored")
@click.option("--probe-url", help="Endpoint used to check token freshness")
@click.option(
    "--open-browser/--no-open-browser",
    default=None,
    help="Launch the browser on the login page when needed.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds to wait for a fresh token",
)
@click.option(
    "--strict-close/--lenient-close",
    default=None,
    help="Fail when the watch closes without a token.",
)
@click.option("--log-level", help="Log level (default: INFO)")
# pylint: disable=too-many-arguments,too-many-branches
def token(
    browser_path: str | None,
    file_path: str | None,
    cookie_name: str | None,
    login_url: str | None,
    probe_url: str | None,
    open_browser: bool | None,
    timeout: float | None,
    strict_close: bool | None,
    log_level: str | None,
) -> None:
    load_dotenv()
    base_settings = AppSettings()
    overrides: dict[str, Any] = {}

    if browser_path:
        overrides["browser_path"] = browser_path
    if file_path:
        overrides["profile_file_path"] = file_path
    if cookie_name:
        overrides["cookie_name"] = cookie_name
    if login_url:
        overrides["login_url"] = login_url
    if probe_url:
        overrides["probe_url"] = probe_url
    if open_browser is not None:
        overrides["open_browser"] = open_browser
    if timeout is not None:
        overrides["watch_timeout_seconds"] = timeout
    if strict_close is not None:
        overrides["strict_close"] = strict_close
    if log_level:
        overrides["log_level"] = log_level

    settings = base_settings.model_copy(update=overrides)
    _configure_logging(settings.log_level)
    if not settings.cookie_name:
        raise click.UsageError("a cookie name is required (--cookie-name or PORTABLE_TOKEN_COOKIE_NAME)")
    if settings.open_browser and not settings.login_url:
        raise click.UsageError("--open-browser needs a login URL")

    try:
        result = asyncio.run(_load_token(settings))
    except TokenWatchError as exc:
        raise click.ClickException(str(exc)) from exc
    if not result:
        raise click.ClickException("the watch stopped before a fresh token was found")
    click.echo(result)


@cli.command(name="config", help="Print effective configuration from environment")
def show_settings() -> None:
    settings = AppSettings()
    for field, value in settings.model_dump().items():
        click.echo(f"{field}: {value}")


if __name__ == "__main__":
    cli()
