"""Tests for the startup database initializer."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import unquote

import asyncpg
import pytest

from studiodb.config import EnvironmentConfig, InitializationSettings
from studiodb.initialization import (
    BOOKKEEPING_SCRIPT,
    TEMPLATE_SCHEMA_SCRIPTS,
    DatabaseInitializer,
    InitializationStepError,
    SchemaScripts,
    admin_target_from_environment,
    initialize_databases_on_startup,
)
from studiodb.models import MASKED, ConnectionTarget


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


ADMIN = ConnectionTarget(host="db", port=5432, user="supabase_admin", password="adminpass", database_name="postgres")


class _FakeServer:
    """In-memory catalog standing in for a PostgreSQL server."""

    def __init__(self, databases: set[str] | None = None, tables: set[str] | None = None) -> None:
        self.databases = set(databases or {"postgres"})
        self.tables = set(tables or set())
        self.statements: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.connections: list[_FakeConnection] = []
        self.refuse_connections = False

    async def connect(self, **kwargs: Any) -> _FakeConnection:
        if self.refuse_connections:
            raise OSError("connection refused")
        database = unquote(kwargs["dsn"].rsplit("/", 1)[-1])
        connection = _FakeConnection(self, database)
        self.connections.append(connection)
        return connection

    def executed(self, database: str) -> list[str]:
        return [sql for db, sql in self.statements if db == database]

    def all_sql(self) -> list[str]:
        return [sql for _, sql in self.statements]


class _FakeConnection:
    def __init__(self, server: _FakeServer, database: str) -> None:
        self.server = server
        self.database = database
        self.closed = False

    async def fetchval(self, sql: str, *args: Any) -> bool:
        if "pg_database" in sql:
            return args[0] in self.server.databases
        if "information_schema.tables" in sql:
            return args[0] in self.server.tables
        raise AssertionError(f"unexpected query: {sql}")

    async def execute(self, sql: str) -> str:
        self.server.statements.append((self.database, sql))
        for marker, error in self.server.failures.items():
            if marker in sql:
                raise error
        if sql.startswith("CREATE DATABASE"):
            self.server.databases.add(sql.split('"')[1])
        elif sql.startswith("DROP DATABASE"):
            self.server.databases.discard(sql.split('"')[1])
        elif BOOKKEEPING_SCRIPT in sql:
            self.server.tables.add("studio_projects")
        return "OK"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def scripts(tmp_path: Path) -> SchemaScripts:
    for name in (*TEMPLATE_SCHEMA_SCRIPTS, BOOKKEEPING_SCRIPT):
        (tmp_path / name).write_text(f"-- {name}")
    return SchemaScripts(tmp_path)


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> _FakeServer:
    server = _FakeServer()
    monkeypatch.setattr("studiodb.initialization.asyncpg.connect", server.connect)
    return server


def _initializer(scripts: SchemaScripts) -> DatabaseInitializer:
    return DatabaseInitializer(ADMIN, scripts=scripts)


@pytest.mark.anyio
async def test_fresh_server_is_fully_initialized(server: _FakeServer, scripts: SchemaScripts) -> None:
    report = await _initializer(scripts).initialize_all()

    assert [(step.name, step.outcome) for step in report.steps] == [
        ("system-db", "created"),
        ("system-schemas", "exists"),
        ("template-db", "created"),
        ("template-schemas-or-migration", "created"),
        ("bookkeeping-table", "created"),
    ]
    assert {"_supabase", "supabase_template"} <= server.databases
    assert server.executed("supabase_template") == [f"-- {name}" for name in TEMPLATE_SCHEMA_SCRIPTS]
    system_sql = server.executed("_supabase")
    assert system_sql[0] == 'CREATE SCHEMA IF NOT EXISTS "_analytics"'
    assert '"_analytics".logs' in system_sql[1]
    assert "studio_projects" in server.tables
    assert all(connection.closed for connection in server.connections)


@pytest.mark.anyio
async def test_second_run_creates_nothing(server: _FakeServer, scripts: SchemaScripts) -> None:
    initializer = _initializer(scripts)
    await initializer.initialize_all()
    server.statements.clear()

    report = await initializer.initialize_all()

    assert report.outcome("system-db") == "exists"
    assert report.outcome("template-db") == "exists"
    assert report.outcome("template-schemas-or-migration") == "migrated"
    assert report.outcome("bookkeeping-table") == "exists"
    assert not any(sql.startswith("CREATE DATABASE") for sql in server.all_sql())
    assert server.executed("supabase_template") == ["-- migrate-storage-schema.sql"]
    assert server.executed("postgres") == []


@pytest.mark.anyio
async def test_migration_failure_on_existing_template_is_a_warning(
    server: _FakeServer, scripts: SchemaScripts
) -> None:
    server.databases.update({"_supabase", "supabase_template"})
    server.failures["-- migrate-storage-schema.sql"] = RuntimeError("column conflict")

    report = await _initializer(scripts).initialize_all()

    assert report.outcome("template-schemas-or-migration") == "warning"
    assert report.warnings[0].detail == "column conflict"
    assert report.outcome("bookkeeping-table") == "created"
    assert "supabase_template" in server.databases


@pytest.mark.anyio
async def test_failed_fresh_template_is_dropped(server: _FakeServer, scripts: SchemaScripts) -> None:
    server.failures["-- webhooks-schema.sql"] = RuntimeError("syntax error")

    with pytest.raises(InitializationStepError) as excinfo:
        await _initializer(scripts).initialize_all()

    assert excinfo.value.step == "template-schemas-or-migration"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert 'DROP DATABASE IF EXISTS "supabase_template"' in server.executed("postgres")
    assert "supabase_template" not in server.databases
    assert "studio_projects" not in server.tables
    assert all(connection.closed for connection in server.connections)


@pytest.mark.anyio
async def test_connection_failure_is_fatal_for_system_database(
    server: _FakeServer, scripts: SchemaScripts
) -> None:
    server.refuse_connections = True

    with pytest.raises(InitializationStepError) as excinfo:
        await _initializer(scripts).initialize_all()

    assert excinfo.value.step == "system-db"
    assert isinstance(excinfo.value.__cause__, OSError)


@pytest.mark.anyio
async def test_system_schema_failure_is_fatal_and_closes_connection(
    server: _FakeServer, scripts: SchemaScripts
) -> None:
    server.failures["CREATE SCHEMA"] = RuntimeError("permission denied")

    with pytest.raises(InitializationStepError) as excinfo:
        await _initializer(scripts).initialize_all()

    assert excinfo.value.step == "system-schemas"
    assert all(connection.closed for connection in server.connections)
    assert "supabase_template" not in server.databases


@pytest.mark.anyio
async def test_concurrent_database_creation_is_tolerated(server: _FakeServer, scripts: SchemaScripts) -> None:
    server.failures['CREATE DATABASE "_supabase"'] = asyncpg.exceptions.DuplicateDatabaseError(
        'database "_supabase" already exists'
    )

    report = await _initializer(scripts).initialize_all()

    assert report.outcome("system-db") == "exists"
    assert report.outcome("bookkeeping-table") == "created"


@pytest.mark.anyio
async def test_bookkeeping_failure_is_fatal(server: _FakeServer, scripts: SchemaScripts) -> None:
    server.failures[f"-- {BOOKKEEPING_SCRIPT}"] = RuntimeError("disk full")

    with pytest.raises(InitializationStepError) as excinfo:
        await _initializer(scripts).initialize_all()

    assert excinfo.value.step == "bookkeeping-table"


@pytest.mark.anyio
async def test_custom_names_are_quoted(server: _FakeServer, scripts: SchemaScripts) -> None:
    settings = InitializationSettings(system_database="sys-db", template_database="tmpl")

    await DatabaseInitializer(ADMIN, settings=settings, scripts=scripts).initialize_all()

    assert 'CREATE DATABASE "sys-db"' in server.executed("postgres")
    assert 'CREATE DATABASE "tmpl"' in server.executed("postgres")


def test_packaged_sql_scripts_are_present() -> None:
    packaged = SchemaScripts()

    for name in (*TEMPLATE_SCHEMA_SCRIPTS, BOOKKEEPING_SCRIPT):
        assert packaged.read(name).strip()


def test_missing_script_reports_directory(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError) as excinfo:
        SchemaScripts(tmp_path).read("auth-schema.sql")

    assert str(tmp_path) in str(excinfo.value)


def test_masked_admin_target_is_rejected() -> None:
    with pytest.raises(ValueError):
        DatabaseInitializer(
            ConnectionTarget(host="db", port=5432, user="u", password=MASKED, database_name="postgres")
        )


class _StaticProvider:
    def __init__(self, config: EnvironmentConfig) -> None:
        self._config = config

    def get_current_config(self) -> EnvironmentConfig:
        return self._config


def test_admin_target_from_environment_variables() -> None:
    provider = _StaticProvider(EnvironmentConfig(postgres_host="pg", postgres_password="adminpass", postgres_db="main"))

    target = admin_target_from_environment(provider)

    assert target == ConnectionTarget(
        host="pg", port=5432, user="supabase_admin", password="adminpass", database_name="main"
    )


def test_admin_target_prefers_database_url() -> None:
    provider = _StaticProvider(EnvironmentConfig(database_url="postgresql://root:pw@other:6543/main"))

    target = admin_target_from_environment(provider)

    assert (target.host, target.port, target.user, target.password) == ("other", 6543, "root", "pw")


@pytest.mark.anyio
async def test_initialize_on_startup_uses_environment(
    server: _FakeServer, scripts: SchemaScripts, monkeypatch: pytest.MonkeyPatch
) -> None:
    dsns: list[str] = []
    original = server.connect

    async def _connect(**kwargs: Any) -> _FakeConnection:
        dsns.append(kwargs["dsn"])
        return await original(**kwargs)

    monkeypatch.setattr("studiodb.initialization.asyncpg.connect", _connect)
    provider = _StaticProvider(EnvironmentConfig(postgres_password="adminpass"))
    settings = InitializationSettings(sql_dir=scripts.directory)

    report = await initialize_databases_on_startup(provider, settings)

    assert report.outcome("bookkeeping-table") == "created"
    assert dsns[0] == "postgresql://supabase_admin:adminpass@db:5432/postgres"
