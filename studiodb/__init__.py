"""Credential resolution and connection routing for self-hosted projects."""

from __future__ import annotations

from .config import (
    AppConfig,
    ConfigProvider,
    EnvironmentConfig,
    EnvironmentConfigError,
    EnvironmentConfigProvider,
    InitializationSettings,
    PoolSettings,
    load_config,
)
from .connstring import (
    ConnectionParameterError,
    ConnectionStringResult,
    InvalidConnectionStringError,
    MASKED_PASSWORD_PLACEHOLDER,
    build_connection_string,
    generate_connection_string_with_fallback,
    parse_connection_string,
    parse_connection_string_with_fallback,
    validate_connection_string_format,
)
from .context import StudioContext, create_context
from .credentials import CredentialResolver
from .initialization import (
    DatabaseInitializer,
    InitializationReport,
    InitializationStepError,
    initialize_databases_on_startup,
)
from .ledger import FallbackUsageLedger, FallbackUsageStats
from .models import (
    MASKED,
    ConnectionTarget,
    FallbackCredentials,
    FallbackUsageEntry,
    PoolKey,
    PoolStats,
    ProjectCredentials,
    ProjectRecord,
)
from .pools import PoolCreationError, PoolRouter
from .projects import ProjectStore, ProjectStoreError

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "ConfigProvider",
    "ConnectionParameterError",
    "ConnectionStringResult",
    "ConnectionTarget",
    "CredentialResolver",
    "DatabaseInitializer",
    "EnvironmentConfig",
    "EnvironmentConfigError",
    "EnvironmentConfigProvider",
    "FallbackCredentials",
    "FallbackUsageEntry",
    "FallbackUsageLedger",
    "FallbackUsageStats",
    "InitializationReport",
    "InitializationSettings",
    "InitializationStepError",
    "InvalidConnectionStringError",
    "MASKED",
    "MASKED_PASSWORD_PLACEHOLDER",
    "PoolCreationError",
    "PoolKey",
    "PoolRouter",
    "PoolSettings",
    "PoolStats",
    "ProjectCredentials",
    "ProjectRecord",
    "ProjectStore",
    "ProjectStoreError",
    "StudioContext",
    "__version__",
    "build_connection_string",
    "create_context",
    "generate_connection_string_with_fallback",
    "initialize_databases_on_startup",
    "load_config",
    "parse_connection_string",
    "parse_connection_string_with_fallback",
    "validate_connection_string_format",
]
