"""Read-only access to the project bookkeeping table."""

from __future__ import annotations

from typing import Any, Mapping

import asyncpg
from pydantic import BaseModel, ConfigDict, ValidationError

from .connstring import build_connection_string, quote_identifier
from .credentials import CredentialResolver
from .models import ConnectionTarget, ProjectRecord


class ProjectStoreError(RuntimeError):
    """Raised when the bookkeeping table cannot be read."""


class ProjectRow(BaseModel):
    """Columns of ``studio_projects`` that routing depends on."""

    model_config = ConfigDict(extra="ignore")

    ref: str
    name: str
    database_name: str
    database_user: Any = None
    database_password_hash: Any = None


class ProjectStore:
    """Looks projects up by reference or database name."""

    _SELECT = (
        "SELECT ref, name, database_name, database_user, database_password_hash "
        "FROM public.{table} WHERE {column} = $1"
    )

    def __init__(
        self,
        target: ConnectionTarget,
        resolver: CredentialResolver,
        *,
        table: str = "studio_projects",
        connect_timeout: float = 5.0,
    ) -> None:
        self._target = target
        self._resolver = resolver
        self._table = table
        self._connect_timeout = connect_timeout

    async def find_by_ref(self, ref: str) -> ProjectRecord | None:
        return await self._find_one("ref", ref)

    async def find_by_database_name(self, database_name: str) -> ProjectRecord | None:
        return await self._find_one("database_name", database_name)

    async def _find_one(self, column: str, value: str) -> ProjectRecord | None:
        sql = self._SELECT.format(table=quote_identifier(self._table), column=column)
        try:
            conn = await asyncpg.connect(
                dsn=build_connection_string(self._target),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise ProjectStoreError(f"Failed to connect to project store: {exc}") from exc
        try:
            row = await conn.fetchrow(sql, value)
        except Exception as exc:
            raise ProjectStoreError(f"Failed to look up project by {column}: {exc}") from exc
        finally:
            await conn.close()
        if row is None:
            return None
        return self._to_record(dict(row))

    def _to_record(self, row: Mapping[str, Any]) -> ProjectRecord:
        try:
            parsed = ProjectRow.model_validate(row)
        except ValidationError as exc:
            raise ProjectStoreError(f"Malformed project row: {exc}") from exc
        credentials = self._resolver.get_project_credentials(
            parsed.ref,
            parsed.database_user,
            parsed.database_password_hash,
        )
        return ProjectRecord(
            ref=parsed.ref,
            name=parsed.name,
            database_name=parsed.database_name,
            credentials=credentials,
        )


__all__ = ["ProjectRow", "ProjectStore", "ProjectStoreError"]
