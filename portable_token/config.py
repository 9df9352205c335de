from __future__ import annotations

from pathlib import PurePath
from typing import Annotated, Literal

from pydantic import AliasChoices, AnyHttpUrl, Field, PositiveFloat, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROFILE_FILE = "Data/profile/sessionstore-backups/recovery.jsonlz4"


class AppSettings(BaseSettings):
    """Application configuration loaded from environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="PORTABLE_TOKEN_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Portable browser
    browser_path: str = Field(
        default=".",
        description="Root directory of the portable browser installation.",
        validation_alias=AliasChoices("browser_path", "PORTABLE_TOKEN_BROWSER_PATH", "FIREFOX_PORTABLE_PATH"),
    )
    executable_name: str = Field("FirefoxPortable.exe", description="Launcher executable inside browser_path.")
    profile_file_path: str = Field(
        DEFAULT_PROFILE_FILE,
        description="Cookie file relative to browser_path (*.jsonlz4 session store or cookies.sqlite).",
    )

    # Token
    cookie_name: str | None = Field(default=None, description="Cookie carrying the bearer token.")
    login_url: AnyHttpUrl | None = Field(
        default=None,
        description="Login page opened in the browser when no fresh token is stored.",
        validation_alias=AliasChoices("login_url", "PORTABLE_TOKEN_LOGIN_URL", "LOGIN_URL"),
    )
    probe_url: AnyHttpUrl | None = Field(
        default=None,
        description="Endpoint answering 401/403 for expired tokens; JWT exp claims are used when unset.",
    )
    token_leeway_seconds: Annotated[float, Field(ge=0)] = 60.0
    probe_timeout_seconds: Annotated[float, Field(gt=0)] = 20.0

    # Watch
    open_browser: bool = Field(False, description="Launch the browser on login_url when the token is missing.")
    watch_timeout_seconds: PositiveFloat | None = Field(
        default=None,
        description="Give up waiting for a fresh token after this many seconds.",
    )
    strict_close: bool = Field(False, description="Treat a watch closing without a token as an error.")

    # Container decoding
    expiry_unit: Literal["seconds", "milliseconds"] = Field(
        "milliseconds",
        description="Unit of the expiry field in the compressed session store.",
    )
    probe_factor_min: Annotated[int, Field(gt=0)] = 5
    probe_factor_max: Annotated[int, Field(gt=0)] = 30
    probe_factor_step: Annotated[int, Field(gt=0)] = 5

    log_level: str = Field("INFO", description="Root log level.")

    @model_validator(mode="before")
    @classmethod
    def _empty_strings_to_none(cls, values: dict[str, object]) -> dict[str, object]:
        for key in ("cookie_name", "login_url", "probe_url", "watch_timeout_seconds"):
            if values.get(key) == "":
                values[key] = None
        return values

    @model_validator(mode="after")
    def _check_probe_range(self) -> AppSettings:
        if self.probe_factor_min > self.probe_factor_max:
            raise ValueError("probe_factor_min must not exceed probe_factor_max")
        return self

    @property
    def profile_file_name(self) -> str:
        return PurePath(self.profile_file_path).name

    @property
    def uses_sqlite_store(self) -> bool:
        return self.profile_file_name.endswith(".sqlite")
