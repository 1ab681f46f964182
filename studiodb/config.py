"""Environment and settings loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILE = Path.home() / ".config" / "studiodb" / "config.toml"

_ENV_FIELDS = (
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "POSTGRES_PASSWORD",
    "POSTGRES_USER_READ_WRITE",
    "POSTGRES_USER_READ_ONLY",
    "DATABASE_URL",
)


class EnvironmentConfigError(RuntimeError):
    """Raised when the process environment cannot be turned into a config."""


class EnvironmentConfig(BaseModel):
    """Database settings sourced from the process environment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    postgres_host: str = Field(default="db", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT", ge=1, le=65535)
    postgres_db: str = Field(default="postgres", alias="POSTGRES_DB")
    postgres_password: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    postgres_user_read_write: str = Field(default="supabase_admin", alias="POSTGRES_USER_READ_WRITE")
    postgres_user_read_only: str = Field(default="supabase_read_only_user", alias="POSTGRES_USER_READ_ONLY")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    def user_for(self, read_only: bool) -> str:
        """Administrative user for the requested access level."""

        return self.postgres_user_read_only if read_only else self.postgres_user_read_write


@runtime_checkable
class ConfigProvider(Protocol):
    """Anything able to hand out the current environment configuration."""

    def get_current_config(self) -> EnvironmentConfig:
        """Return the current configuration (may raise)."""


class EnvironmentConfigProvider:
    """Reads :class:`EnvironmentConfig` from ``os.environ`` on every call."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def get_current_config(self) -> EnvironmentConfig:
        source = os.environ if self._environ is None else self._environ
        values = {key: source[key] for key in _ENV_FIELDS if source.get(key)}
        try:
            return EnvironmentConfig.model_validate(values)
        except ValidationError as exc:
            raise EnvironmentConfigError(f"Invalid database environment: {exc}") from exc


class PoolSettings(BaseModel):
    """Sizing and timeouts applied to every pool the router creates."""

    max_pools: int = Field(default=100, ge=1)
    max_connections_per_pool: int = Field(default=10, ge=1)
    min_connections_per_pool: int = Field(default=1, ge=0)
    idle_timeout_seconds: float = Field(default=30.0, gt=0)
    connect_timeout_seconds: float = Field(default=2.0, gt=0)


class InitializationSettings(BaseModel):
    """Names and payload location used by the startup initializer."""

    system_database: str = "_supabase"
    analytics_schema: str = "_analytics"
    template_database: str = "supabase_template"
    bookkeeping_table: str = "studio_projects"
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    sql_dir: Path | None = None


class AppConfig(BaseModel):
    """Shape of the optional configuration file."""

    pool: PoolSettings = Field(default_factory=PoolSettings)
    initialization: InitializationSettings = Field(default_factory=InitializationSettings)

    def with_pool(self, **updates: object) -> AppConfig:
        """Return a copy with pool settings changed."""

        pool = self.pool.model_copy(update=updates)
        return self.model_copy(update={"pool": pool})


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing or broken."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        data = {}
    except (tomllib.TOMLDecodeError, OSError):
        data = {}

    try:
        config = AppConfig.model_validate(data)
    except ValidationError:
        config = AppConfig()
    return apply_environment_overrides(config, os.environ if environ is None else environ)


def apply_environment_overrides(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    """Apply the pool-sizing environment variables on top of file settings."""

    updates: dict[str, object] = {}
    max_pools = _env_int(environ, "MAX_CONNECTION_POOLS")
    if max_pools is not None and max_pools > 0:
        updates["max_pools"] = max_pools
    per_pool = _env_int(environ, "MAX_CONNECTIONS_PER_POOL")
    if per_pool is not None and per_pool > 0:
        updates["max_connections_per_pool"] = per_pool
    idle_ms = _env_int(environ, "POOL_IDLE_TIMEOUT_MS")
    if idle_ms is not None and idle_ms > 0:
        updates["idle_timeout_seconds"] = idle_ms / 1000
    connect_ms = _env_int(environ, "POOL_CONNECTION_TIMEOUT_MS")
    if connect_ms is not None and connect_ms > 0:
        updates["connect_timeout_seconds"] = connect_ms / 1000
    if not updates:
        return config
    return config.with_pool(**updates)


def _env_int(environ: Mapping[str, str], key: str) -> int | None:
    raw = environ.get(key)
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    pool = raw.get("pool")
    if isinstance(pool, dict):
        data["pool"] = {
            key: value
            for key, value in pool.items()
            if key in PoolSettings.model_fields and isinstance(value, (int, float))
        }
    initialization = raw.get("initialization")
    if isinstance(initialization, dict):
        parsed: dict[str, object] = {}
        for key, value in initialization.items():
            if key not in InitializationSettings.model_fields:
                continue
            if key == "connect_timeout_seconds" and isinstance(value, (int, float)):
                parsed[key] = value
            elif isinstance(value, str):
                parsed[key] = value
        data["initialization"] = parsed
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConfigProvider",
    "EnvironmentConfig",
    "EnvironmentConfigError",
    "EnvironmentConfigProvider",
    "InitializationSettings",
    "PoolSettings",
    "apply_environment_overrides",
    "load_config",
]
