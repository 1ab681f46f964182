"""Shared dataclasses used across credential, codec and pool modules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Literal, NamedTuple

CredentialType = Literal["user", "password", "both"]
CredentialSource = Literal["environment", "default"]

DEFAULT_POSTGRES_PORT = 5432


class MaskedPassword(Enum):
    """Sentinel standing in for a password that was masked for display."""

    PLACEHOLDER = "masked"

    def __repr__(self) -> str:
        return "MASKED"


MASKED = MaskedPassword.PLACEHOLDER


@dataclass(frozen=True, slots=True)
class ProjectCredentials:
    """Normalized project user/password pair."""

    user: str | None
    password_hash: str | None
    is_complete: bool


@dataclass(frozen=True, slots=True)
class FallbackCredentials:
    """Administrative credentials derived from the environment."""

    user: str
    password: str
    source: CredentialSource


@dataclass(frozen=True, slots=True)
class FallbackUsageEntry:
    """One recorded use of fallback credentials."""

    project_ref: str
    reason: str
    credential_type: CredentialType
    timestamp: str
    sequence: int = 0


@dataclass(frozen=True, slots=True)
class ConnectionTarget:
    """Everything needed to render (or connect with) a PostgreSQL URI.

    ``password`` is either the real secret or :data:`MASKED`. A masked target
    is display-only; the codec refuses to render it as a connectable URI.
    """

    host: str
    port: int
    user: str
    password: str | MaskedPassword
    database_name: str
    read_only: bool = False

    @property
    def is_masked(self) -> bool:
        return self.password is MASKED

    def with_database(self, database_name: str) -> ConnectionTarget:
        """Return a copy pointing at another database on the same server."""

        return replace(self, database_name=database_name)

    def __repr__(self) -> str:
        password = "MASKED" if self.is_masked else "***"
        return (
            f"ConnectionTarget(host={self.host!r}, port={self.port!r}, user={self.user!r}, "
            f"password={password}, database_name={self.database_name!r}, read_only={self.read_only!r})"
        )


class PoolKey(NamedTuple):
    """Identity of a cached connection pool."""

    database_name: str
    read_only: bool

    def label(self) -> str:
        return f"{self.database_name}:{'ro' if self.read_only else 'rw'}"


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Connection counts reported for a database's pools."""

    total_count: int
    idle_count: int

    @property
    def active_count(self) -> int:
        return self.total_count - self.idle_count


@dataclass(frozen=True, slots=True)
class ProjectRecord:
    """Project bookkeeping row reduced to what routing needs."""

    ref: str
    name: str
    database_name: str
    credentials: ProjectCredentials


__all__ = [
    "ConnectionTarget",
    "CredentialSource",
    "CredentialType",
    "DEFAULT_POSTGRES_PORT",
    "FallbackCredentials",
    "FallbackUsageEntry",
    "MASKED",
    "MaskedPassword",
    "PoolKey",
    "PoolStats",
    "ProjectCredentials",
    "ProjectRecord",
]
