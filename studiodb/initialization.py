"""Startup initialization of the system, template and bookkeeping databases.

Every step works out whether it still has something to do by querying the
catalogs directly, so the whole sequence can be re-run on each start. Steps
run strictly in order because later ones rely on what earlier ones created:

1. ``system-db`` - the system database exists.
2. ``system-schemas`` - its analytics schema and log table exist.
3. ``template-db`` - the template database exists; a freshly created template
   receives the full schema set, an existing one only the migration pass
   (``template-schemas-or-migration``).
4. ``bookkeeping-table`` - the project registry table exists in the main
   database.

Failures in 1, 2 and 4, or while building a fresh template, abort startup
with :class:`InitializationStepError`. A failed migration pass on an existing
template is logged and reported as a warning.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Literal, Sequence, TypeVar

import asyncpg

from .config import ConfigProvider, EnvironmentConfigProvider, InitializationSettings
from .connstring import build_connection_string, parse_connection_string, quote_identifier
from .models import ConnectionTarget

LOG = logging.getLogger(__name__)

SYSTEM_DB_STEP = "system-db"
SYSTEM_SCHEMAS_STEP = "system-schemas"
TEMPLATE_DB_STEP = "template-db"
TEMPLATE_SCHEMAS_STEP = "template-schemas-or-migration"
BOOKKEEPING_STEP = "bookkeeping-table"

TEMPLATE_SCHEMA_SCRIPTS = (
    "auth-schema.sql",
    "storage-schema.sql",
    "webhooks-schema.sql",
    "analytics-schema.sql",
    "migrate-storage-schema.sql",
)
TEMPLATE_MIGRATION_SCRIPTS = ("migrate-storage-schema.sql",)
BOOKKEEPING_SCRIPT = "create-studio-projects.sql"

DEFAULT_SQL_DIR = Path(__file__).resolve().parent / "sql"

StepOutcome = Literal["created", "exists", "migrated", "warning"]
T = TypeVar("T")


class InitializationStepError(RuntimeError):
    """Raised when a required initialization step fails."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


@dataclass(frozen=True, slots=True)
class StepResult:
    """What a single step did."""

    name: str
    outcome: StepOutcome
    detail: str = ""


@dataclass(frozen=True, slots=True)
class InitializationReport:
    """Ordered results of an initialization run."""

    steps: tuple[StepResult, ...]

    def outcome(self, name: str) -> StepOutcome | None:
        for step in self.steps:
            if step.name == name:
                return step.outcome
        return None

    @property
    def warnings(self) -> tuple[StepResult, ...]:
        return tuple(step for step in self.steps if step.outcome == "warning")


class SchemaScripts:
    """Locates the SQL payloads applied during initialization."""

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory or DEFAULT_SQL_DIR

    @property
    def directory(self) -> Path:
        return self._directory

    def read(self, name: str) -> str:
        path = self._directory / name
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise FileNotFoundError(f"SQL file not found: {name} (looked in {self._directory})") from exc


class DatabaseInitializer:
    """Runs the idempotent startup sequence against an administrative target."""

    _DATABASE_EXISTS = "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)"
    _TABLE_EXISTS = """
        SELECT EXISTS (
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = $1
        )
    """
    _SYSTEM_LOG_TABLE = """
        CREATE TABLE IF NOT EXISTS {schema}.logs (
            id BIGSERIAL PRIMARY KEY,
            timestamp TIMESTAMPTZ DEFAULT NOW(),
            level TEXT,
            message TEXT,
            metadata JSONB,
            source TEXT
        )
    """

    def __init__(
        self,
        admin_target: ConnectionTarget,
        *,
        settings: InitializationSettings | None = None,
        scripts: SchemaScripts | None = None,
    ) -> None:
        if admin_target.is_masked:
            raise ValueError("Initialization needs a connectable target, not a masked one.")
        self._target = admin_target
        self._settings = settings or InitializationSettings()
        self._scripts = scripts or SchemaScripts(self._settings.sql_dir)

    async def initialize_all(self) -> InitializationReport:
        """Run every step in order and report what each one did."""

        LOG.info("Starting database initialization", extra={"target": self._display_target()})
        results: list[StepResult] = []
        results.append(await self._required(SYSTEM_DB_STEP, self.ensure_system_database))
        results.append(await self._required(SYSTEM_SCHEMAS_STEP, self.ensure_system_schemas))
        results.extend(await self._required(TEMPLATE_DB_STEP, self.ensure_template_database))
        results.append(await self._required(BOOKKEEPING_STEP, self.ensure_bookkeeping_table))
        report = InitializationReport(steps=tuple(results))
        LOG.info(
            "Database initialization finished",
            extra={"steps": {step.name: step.outcome for step in report.steps}},
        )
        return report

    async def ensure_system_database(self) -> StepResult:
        name = self._settings.system_database
        async with self._connect(self._target.database_name) as conn:
            if await self._database_exists(conn, name):
                return self._result(SYSTEM_DB_STEP, "exists", name)
            created = await self._create_database(conn, name)
        return self._result(SYSTEM_DB_STEP, "created" if created else "exists", name)

    async def ensure_system_schemas(self) -> StepResult:
        schema = quote_identifier(self._settings.analytics_schema)
        async with self._connect(self._settings.system_database) as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
            await conn.execute(self._SYSTEM_LOG_TABLE.format(schema=schema))
        return self._result(SYSTEM_SCHEMAS_STEP, "exists", self._settings.analytics_schema)

    async def ensure_template_database(self) -> tuple[StepResult, StepResult]:
        name = self._settings.template_database
        async with self._connect(self._target.database_name) as conn:
            created = False
            if not await self._database_exists(conn, name):
                created = await self._create_database(conn, name)

        if created:
            try:
                await self._apply_scripts(name, TEMPLATE_SCHEMA_SCRIPTS)
            except Exception as exc:
                LOG.exception("Template schema initialization failed", extra={"database": name})
                await self._drop_database(name)
                raise InitializationStepError(
                    TEMPLATE_SCHEMAS_STEP,
                    f"Failed to initialize schemas in new template database '{name}': {exc}",
                ) from exc
            return (
                self._result(TEMPLATE_DB_STEP, "created", name),
                self._result(TEMPLATE_SCHEMAS_STEP, "created", "full schema set"),
            )

        try:
            await self._apply_scripts(name, TEMPLATE_MIGRATION_SCRIPTS)
        except Exception as exc:
            LOG.warning(
                "Template schema migration failed; continuing with existing template",
                extra={"database": name, "error": str(exc)},
            )
            return (
                self._result(TEMPLATE_DB_STEP, "exists", name),
                StepResult(TEMPLATE_SCHEMAS_STEP, "warning", str(exc)),
            )
        return (
            self._result(TEMPLATE_DB_STEP, "exists", name),
            self._result(TEMPLATE_SCHEMAS_STEP, "migrated", "storage migration"),
        )

    async def ensure_bookkeeping_table(self) -> StepResult:
        table = self._settings.bookkeeping_table
        async with self._connect(self._target.database_name) as conn:
            if await conn.fetchval(self._TABLE_EXISTS, table):
                return self._result(BOOKKEEPING_STEP, "exists", table)
            await conn.execute(self._scripts.read(BOOKKEEPING_SCRIPT))
        return self._result(BOOKKEEPING_STEP, "created", table)

    @asynccontextmanager
    async def _connect(self, database_name: str) -> AsyncIterator[asyncpg.Connection]:
        conn = await asyncpg.connect(
            dsn=build_connection_string(self._target.with_database(database_name)),
            timeout=self._settings.connect_timeout_seconds,
        )
        try:
            yield conn
        finally:
            await conn.close()

    async def _apply_scripts(self, database_name: str, names: Sequence[str]) -> None:
        payloads = [(name, self._scripts.read(name)) for name in names]
        async with self._connect(database_name) as conn:
            for name, sql in payloads:
                await conn.execute(sql)
                LOG.info("Applied SQL script", extra={"database": database_name, "script": name})

    async def _database_exists(self, conn: asyncpg.Connection, name: str) -> bool:
        return bool(await conn.fetchval(self._DATABASE_EXISTS, name))

    async def _create_database(self, conn: asyncpg.Connection, name: str) -> bool:
        try:
            await conn.execute(f"CREATE DATABASE {quote_identifier(name)}")
        except asyncpg.exceptions.DuplicateDatabaseError:
            # Another process created it between our check and the CREATE.
            LOG.info("Database created concurrently", extra={"database": name})
            return False
        return True

    async def _drop_database(self, name: str) -> None:
        try:
            async with self._connect(self._target.database_name) as conn:
                await conn.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")
        except Exception:
            LOG.exception("Failed to drop partially initialized database", extra={"database": name})
        else:
            LOG.info("Dropped partially initialized database", extra={"database": name})

    async def _required(self, step: str, action: Callable[[], Awaitable[T]]) -> T:
        try:
            return await action()
        except InitializationStepError:
            raise
        except Exception as exc:
            LOG.exception("Initialization step failed", extra={"step": step})
            raise InitializationStepError(step, f"Initialization step '{step}' failed: {exc}") from exc

    def _result(self, step: str, outcome: StepOutcome, detail: str) -> StepResult:
        LOG.info("Initialization step complete", extra={"step": step, "outcome": outcome, "detail": detail})
        return StepResult(step, outcome, detail)

    def _display_target(self) -> str:
        return build_connection_string(self._target, mask=True)


def admin_target_from_environment(config_provider: ConfigProvider | None = None) -> ConnectionTarget:
    """Administrative target taken from ``DATABASE_URL`` or ``POSTGRES_*``."""

    config = (config_provider or EnvironmentConfigProvider()).get_current_config()
    if config.database_url:
        return parse_connection_string(config.database_url, allow_masked_password=False)
    return ConnectionTarget(
        host=config.postgres_host,
        port=config.postgres_port,
        user=config.postgres_user_read_write,
        password=config.postgres_password,
        database_name=config.postgres_db,
    )


async def initialize_databases_on_startup(
    config_provider: ConfigProvider | None = None,
    settings: InitializationSettings | None = None,
) -> InitializationReport:
    """Build the administrative target from the environment and initialize."""

    initializer = DatabaseInitializer(admin_target_from_environment(config_provider), settings=settings)
    return await initializer.initialize_all()


__all__ = [
    "BOOKKEEPING_STEP",
    "DatabaseInitializer",
    "InitializationReport",
    "InitializationStepError",
    "SYSTEM_DB_STEP",
    "SYSTEM_SCHEMAS_STEP",
    "SchemaScripts",
    "StepResult",
    "TEMPLATE_DB_STEP",
    "TEMPLATE_SCHEMAS_STEP",
    "admin_target_from_environment",
    "initialize_databases_on_startup",
]
