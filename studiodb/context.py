"""Process-wide wiring of the ledger, resolver, router and project store."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import AppConfig, ConfigProvider, EnvironmentConfigProvider, load_config
from .credentials import CredentialResolver
from .initialization import admin_target_from_environment
from .ledger import FallbackUsageLedger
from .models import ProjectRecord
from .pools import PoolRouter
from .projects import ProjectStore, ProjectStoreError

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class StudioContext:
    """The single shared instance of each service for this process."""

    config: AppConfig
    config_provider: ConfigProvider
    ledger: FallbackUsageLedger
    resolver: CredentialResolver
    router: PoolRouter
    project_store: ProjectStore

    async def close(self) -> None:
        await self.router.shutdown()


def create_context(config: AppConfig | None = None, provider: ConfigProvider | None = None) -> StudioContext:
    """Build a fully wired :class:`StudioContext`."""

    config = config or load_config()
    provider = provider or EnvironmentConfigProvider()
    ledger = FallbackUsageLedger()
    resolver = CredentialResolver(provider, ledger)
    store = ProjectStore(
        admin_target_from_environment(provider),
        resolver,
        table=config.initialization.bookkeeping_table,
        connect_timeout=config.pool.connect_timeout_seconds,
    )

    async def lookup(database_name: str) -> ProjectRecord | None:
        try:
            return await store.find_by_database_name(database_name)
        except ProjectStoreError as exc:
            # Unreadable bookkeeping means administrative credentials.
            LOG.warning(
                "Project lookup failed; routing with fallback credentials",
                extra={"database": database_name, "error": str(exc)},
            )
            return None

    router = PoolRouter(resolver, settings=config.pool, credentials_lookup=lookup)
    return StudioContext(
        config=config,
        config_provider=provider,
        ledger=ledger,
        resolver=resolver,
        router=router,
        project_store=store,
    )


__all__ = ["StudioContext", "create_context"]
