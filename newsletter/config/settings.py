"""Layered application configuration.

Settings are read from `configuration.toml` in the working directory, then overridden by a local
`.env` file and by `APP_`-prefixed environment variables (nested fields use `__`, for example
`APP_DATABASE__HOST`).
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from psycopg.conninfo import make_conninfo
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
    TomlConfigSettingsSource,
)

CONFIG_FILE = "configuration.toml"


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing, malformed, or invalid."""


class DatabaseSettings(BaseModel):
    """Credentials and location of the Postgres server plus the target database."""

    username: str
    password: str
    host: str
    port: int = Field(ge=0, le=65535)
    database_name: str

    pool_min_size: int = Field(default=1, ge=0)
    pool_max_size: int = Field(default=10, ge=1)
    pool_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: int = Field(default=10, ge=0)

    def connection_string(self) -> str:
        """Conninfo addressing `database_name` on the configured server."""

        return make_conninfo(
            self.connection_string_default(),
            dbname=self.database_name,
        )

    def connection_string_default(self) -> str:
        """Conninfo addressing the server without selecting a database.

        Only used for administrative statements (`CREATE DATABASE` / `DROP DATABASE`).
        """

        return make_conninfo(
            host=self.host,
            port=self.port,
            user=self.username,
            password=self.password,
            connect_timeout=self.connect_timeout,
        )

    def with_database_name(self, database_name: str) -> DatabaseSettings:
        """Return a copy of these settings pointing at another database."""

        return self.model_copy(update={"database_name": database_name})


class Settings(BaseSettings):
    """Top-level settings for the HTTP service."""

    model_config = SettingsConfigDict(
        toml_file=CONFIG_FILE,
        env_prefix="APP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    database: DatabaseSettings
    application_port: int = Field(ge=0, le=65535)
    application_host: str = "127.0.0.1"

    @classmethod
    def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,
            file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
        )


def load_settings() -> Settings:
    """Load and validate settings from the working directory and the environment.

    Raises:
        ConfigError: If `configuration.toml` is missing, is not valid TOML, or a field is missing
            or has the wrong type. Callers decide whether this is fatal.
    """

    config_path = Path(CONFIG_FILE)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found: {config_path.resolve()}")

    try:
        return Settings()
    except (tomllib.TOMLDecodeError, SettingsError) as exc:
        raise ConfigError(f"Malformed configuration file {config_path}: {exc}") from exc
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
