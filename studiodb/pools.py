"""Per-database connection pool cache backed by asyncpg."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import asyncpg

from .config import PoolSettings
from .connstring import ConnectionParameterError, generate_connection_string_with_fallback
from .credentials import CredentialResolver
from .models import PoolKey, PoolStats, ProjectRecord

LOG = logging.getLogger(__name__)

CredentialsLookup = Callable[[str], Awaitable[ProjectRecord | None]]


class PoolCreationError(RuntimeError):
    """Raised when a pool for a key cannot be created."""

    def __init__(self, key: PoolKey, message: str) -> None:
        super().__init__(message)
        self.key = key


@dataclass(slots=True)
class PoolEntry:
    """A cached pool and the settings it was created with."""

    key: PoolKey
    pool: asyncpg.Pool
    max_size: int
    idle_timeout: float
    created_at: datetime
    last_used: float

    def stats(self) -> PoolStats:
        return PoolStats(total_count=self.pool.get_size(), idle_count=self.pool.get_idle_size())


@dataclass(frozen=True, slots=True)
class PoolSummary:
    """Statistics for one cached pool."""

    key: PoolKey
    stats: PoolStats
    created_at: datetime


@dataclass(frozen=True, slots=True)
class PoolOverview:
    """Statistics across every cached pool."""

    pool_count: int
    max_pools: int
    pools: tuple[PoolSummary, ...]


class PoolRouter:
    """Hands out one asyncpg pool per ``(database, read_only)`` key.

    Pools are created lazily on first request. Concurrent requests for the
    same key wait on a per-key lock, so only one pool is ever built for it.
    A failed creation leaves nothing in the cache; the next call retries.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        *,
        settings: PoolSettings | None = None,
        credentials_lookup: CredentialsLookup | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self._settings = settings or PoolSettings()
        self._credentials_lookup = credentials_lookup
        self._clock = clock
        self._entries: dict[PoolKey, PoolEntry] = {}
        self._locks: dict[PoolKey, asyncio.Lock] = {}
        self._closed = False

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    @property
    def pool_count(self) -> int:
        return len(self._entries)

    def has_pool(self, database_name: str, *, read_only: bool = False) -> bool:
        return PoolKey(database_name, read_only) in self._entries

    async def get_pool(self, database_name: str, *, read_only: bool = False) -> asyncpg.Pool:
        """Return the cached pool for the key, creating it on first use."""

        key = PoolKey(database_name, read_only)
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_used = self._clock()
            return entry.pool

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_used = self._clock()
                return entry.pool
            if self._closed:
                raise PoolCreationError(key, "Pool router has been shut down.")
            # Evict only once the new pool exists, so a failed creation
            # leaves the cached pools untouched.
            entry = await self._create_entry(key)
            if self._closed:
                await self._close_entry(entry)
                raise PoolCreationError(key, "Pool router was shut down during pool creation.")
            while len(self._entries) >= self._settings.max_pools:
                await self._evict_least_recently_used()
            self._entries[key] = entry
            LOG.info(
                "Created connection pool",
                extra={"pool": key.label(), "pool_count": len(self._entries), "max_pools": self._settings.max_pools},
            )
            return entry.pool

    def get_pool_stats(self, database_name: str) -> PoolStats | None:
        """Connection counts for a database, or ``None`` if it has no pool."""

        entries = [entry for key, entry in self._entries.items() if key.database_name == database_name]
        if not entries:
            return None
        total = 0
        idle = 0
        for entry in entries:
            stats = entry.stats()
            total += stats.total_count
            idle += stats.idle_count
        return PoolStats(total_count=total, idle_count=idle)

    def get_all_pool_stats(self) -> PoolOverview:
        return PoolOverview(
            pool_count=len(self._entries),
            max_pools=self._settings.max_pools,
            pools=tuple(
                PoolSummary(key=entry.key, stats=entry.stats(), created_at=entry.created_at)
                for entry in self._entries.values()
            ),
        )

    async def fetch(self, database_name: str, sql: str, *args: Any, read_only: bool = False) -> list[asyncpg.Record]:
        """Run a row-returning statement on a pooled connection."""

        pool = await self.get_pool(database_name, read_only=read_only)
        return await pool.fetch(sql, *args)

    async def execute(self, database_name: str, sql: str, *args: Any, read_only: bool = False) -> str:
        """Run a statement on a pooled connection and return its status."""

        pool = await self.get_pool(database_name, read_only=read_only)
        return await pool.execute(sql, *args)

    async def close_pool(self, database_name: str) -> int:
        """Close every pool serving ``database_name``; returns how many closed."""

        keys = [key for key in self._entries if key.database_name == database_name]
        closed = 0
        for key in keys:
            entry = self._discard(key)
            if entry is not None:
                await self._close_entry(entry)
                closed += 1
        return closed

    async def cleanup_idle_pools(self) -> int:
        """Close pools whose connections are all idle."""

        idle_keys = []
        for key, entry in self._entries.items():
            stats = entry.stats()
            if stats.total_count > 0 and stats.idle_count == stats.total_count:
                idle_keys.append(key)
        closed = 0
        for key in idle_keys:
            entry = self._discard(key)
            if entry is not None:
                await self._close_entry(entry)
                closed += 1
        if closed:
            LOG.info("Cleaned up idle pools", extra={"closed": closed})
        return closed

    async def shutdown(self) -> None:
        """Close every pool and refuse to create new ones."""

        self._closed = True
        entries = list(self._entries.values())
        self._entries.clear()
        self._locks = {key: lock for key, lock in self._locks.items() if lock.locked()}
        for entry in entries:
            await self._close_entry(entry)
        LOG.info("Closed all connection pools", extra={"closed": len(entries)})

    async def _create_entry(self, key: PoolKey) -> PoolEntry:
        dsn = await self._dsn_for(key)
        settings = self._settings
        max_size = settings.max_connections_per_pool
        try:
            pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=min(settings.min_connections_per_pool, max_size),
                max_size=max_size,
                max_inactive_connection_lifetime=settings.idle_timeout_seconds,
                timeout=settings.connect_timeout_seconds,
            )
        except Exception as exc:
            LOG.warning("Failed to create connection pool", extra={"pool": key.label(), "error": str(exc)})
            raise PoolCreationError(key, f"Failed to create pool for '{key.label()}': {exc}") from exc
        now = self._clock()
        return PoolEntry(
            key=key,
            pool=pool,
            max_size=max_size,
            idle_timeout=settings.idle_timeout_seconds,
            created_at=datetime.now(tz=timezone.utc),
            last_used=now,
        )

    async def _dsn_for(self, key: PoolKey) -> str:
        record: ProjectRecord | None = None
        # Read-only pools always use the administrative read-only role.
        if self._credentials_lookup is not None and not key.read_only:
            try:
                record = await self._credentials_lookup(key.database_name)
            except Exception as exc:
                raise PoolCreationError(key, f"Credential lookup failed for '{key.label()}': {exc}") from exc
        try:
            result = await generate_connection_string_with_fallback(
                self._resolver,
                database_name=key.database_name,
                project_ref=record.ref if record else None,
                project_credentials=record.credentials if record else None,
                read_only=key.read_only,
            )
        except ConnectionParameterError as exc:
            raise PoolCreationError(key, f"Cannot build connection string for '{key.label()}': {exc}") from exc
        return result.connection_string

    async def _evict_least_recently_used(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda entry: entry.last_used)
        self._discard(oldest.key)
        await self._close_entry(oldest)
        LOG.info("Closed least recently used pool", extra={"pool": oldest.key.label()})

    def _discard(self, key: PoolKey) -> PoolEntry | None:
        entry = self._entries.pop(key, None)
        lock = self._locks.get(key)
        # A held lock belongs to a creation in flight for this key.
        if lock is not None and not lock.locked():
            del self._locks[key]
        return entry

    async def _close_entry(self, entry: PoolEntry) -> None:
        try:
            await entry.pool.close()
        except Exception:
            LOG.exception("Failed to close connection pool", extra={"pool": entry.key.label()})


__all__ = [
    "CredentialsLookup",
    "PoolCreationError",
    "PoolEntry",
    "PoolOverview",
    "PoolRouter",
    "PoolSummary",
]
