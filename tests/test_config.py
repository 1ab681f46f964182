"""Tests for configuration loading and the environment provider."""

from __future__ import annotations

from pathlib import Path

import pytest

from studiodb import config as config_module
from studiodb.config import (
    AppConfig,
    ConfigProvider,
    EnvironmentConfig,
    EnvironmentConfigError,
    EnvironmentConfigProvider,
    apply_environment_overrides,
    load_config,
)


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    result = load_config(environ={})

    assert result == AppConfig()


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
[pool]
max_pools = 5
idle_timeout_seconds = 12.5
unknown = 3

[initialization]
template_database = "tmpl"
sql_dir = "/srv/sql"
connect_timeout_seconds = 4
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config(environ={})

    assert result.pool.max_pools == 5
    assert result.pool.idle_timeout_seconds == 12.5
    assert result.pool.max_connections_per_pool == 10
    assert result.initialization.template_database == "tmpl"
    assert result.initialization.sql_dir == Path("/srv/sql")
    assert result.initialization.connect_timeout_seconds == 4
    assert result.initialization.system_database == "_supabase"


def test_load_config_handles_toml_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[pool\nmax_pools = [unterminated")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config(environ={})

    assert result == AppConfig()


def test_load_config_ignores_invalid_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[pool]\nmax_pools = 0\n")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config(environ={})

    assert result == AppConfig()


def test_environment_overrides_pool_settings() -> None:
    environ = {
        "MAX_CONNECTION_POOLS": "7",
        "POOL_IDLE_TIMEOUT_MS": "1500",
        "POOL_CONNECTION_TIMEOUT_MS": "250",
        "MAX_CONNECTIONS_PER_POOL": "nope",
    }

    result = apply_environment_overrides(AppConfig(), environ)

    assert result.pool.max_pools == 7
    assert result.pool.idle_timeout_seconds == 1.5
    assert result.pool.connect_timeout_seconds == 0.25
    assert result.pool.max_connections_per_pool == 10


def test_environment_overrides_ignore_non_positive_values() -> None:
    result = apply_environment_overrides(AppConfig(), {"MAX_CONNECTION_POOLS": "0"})

    assert result.pool.max_pools == 100


def test_provider_uses_defaults_for_empty_environment() -> None:
    provider = EnvironmentConfigProvider(environ={})

    config = provider.get_current_config()

    assert config == EnvironmentConfig()
    assert config.postgres_host == "db"
    assert config.postgres_port == 5432
    assert config.database_url is None


def test_provider_reads_environment_and_skips_blank_values() -> None:
    provider = EnvironmentConfigProvider(
        environ={
            "POSTGRES_HOST": "pg.internal",
            "POSTGRES_PORT": "6543",
            "POSTGRES_PASSWORD": "",
            "POSTGRES_USER_READ_ONLY": "reader",
        }
    )

    config = provider.get_current_config()

    assert config.postgres_host == "pg.internal"
    assert config.postgres_port == 6543
    assert config.postgres_password == "postgres"
    assert config.user_for(True) == "reader"
    assert config.user_for(False) == "supabase_admin"


@pytest.mark.parametrize("port", ["abc", "70000"])
def test_provider_rejects_invalid_port(port: str) -> None:
    provider = EnvironmentConfigProvider(environ={"POSTGRES_PORT": port})

    with pytest.raises(EnvironmentConfigError):
        provider.get_current_config()


def test_provider_satisfies_protocol() -> None:
    assert isinstance(EnvironmentConfigProvider(), ConfigProvider)


def test_with_pool_returns_updated_copy() -> None:
    config = AppConfig()

    updated = config.with_pool(max_pools=3)

    assert updated.pool.max_pools == 3
    assert config.pool.max_pools == 100
