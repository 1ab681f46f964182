"""Project credential resolution with environment fallback."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .config import ConfigProvider, EnvironmentConfigProvider
from .ledger import FallbackUsageLedger
from .models import FallbackCredentials, ProjectCredentials

LOG = logging.getLogger(__name__)

DEFAULT_FALLBACK_USER = "postgres"
DEFAULT_FALLBACK_PASSWORD = "postgres"


def normalize_credential_value(value: object) -> str | None:
    """Treat ``None``, non-strings and blank strings as absent; trim the rest."""

    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def credential_field(credentials: object, *names: str) -> Any:
    """First key or attribute of ``credentials`` matching one of ``names``."""

    for name in names:
        if isinstance(credentials, Mapping):
            if name in credentials:
                return credentials[name]
        elif hasattr(credentials, name):
            return getattr(credentials, name)
    return None


class CredentialResolver:
    """Decides between project credentials and administrative fallbacks."""

    def __init__(
        self,
        config_provider: ConfigProvider | None = None,
        ledger: FallbackUsageLedger | None = None,
    ) -> None:
        self._config_provider = config_provider if config_provider is not None else EnvironmentConfigProvider()
        # An empty ledger is falsy; keep the injected instance regardless.
        self._ledger = ledger if ledger is not None else FallbackUsageLedger()

    @property
    def config_provider(self) -> ConfigProvider:
        return self._config_provider

    @property
    def ledger(self) -> FallbackUsageLedger:
        return self._ledger

    def get_project_credentials(
        self,
        project_ref: str,
        raw_user: object = None,
        raw_password: object = None,
    ) -> ProjectCredentials:
        """Normalize a stored user/password pair and flag whether it is usable."""

        user = normalize_credential_value(raw_user)
        password_hash = normalize_credential_value(raw_password)
        return ProjectCredentials(
            user=user,
            password_hash=password_hash,
            is_complete=user is not None and password_hash is not None,
        )

    def should_use_fallback(self, credentials: object) -> bool:
        """Return ``True`` unless both user and password are present.

        Accepts :class:`ProjectCredentials` as well as mappings or legacy
        objects carrying ``user``/``password_hash`` (or ``passwordHash``).
        The fields are always rechecked, so a shape claiming ``is_complete``
        while holding a blank user or password still falls back.
        """

        if credentials is None:
            return True
        if credential_field(credentials, "is_complete", "isComplete") is False:
            return True
        user = normalize_credential_value(credential_field(credentials, "user"))
        password_hash = normalize_credential_value(credential_field(credentials, "password_hash", "passwordHash"))
        return user is None or password_hash is None

    async def get_fallback_credentials(self, read_only: bool = False) -> FallbackCredentials:
        """Administrative credentials for the requested access level."""

        try:
            config = self._config_provider.get_current_config()
        except Exception as exc:
            LOG.warning(
                "Environment config lookup failed; using default credentials",
                extra={"read_only": read_only, "error": str(exc)},
            )
            return self._default_credentials()

        user = normalize_credential_value(config.user_for(read_only))
        password = normalize_credential_value(config.postgres_password)
        if user is None or password is None:
            LOG.warning(
                "Environment credentials are empty; using default credentials",
                extra={"read_only": read_only},
            )
            return self._default_credentials()
        return FallbackCredentials(user=user, password=password, source="environment")

    @staticmethod
    def _default_credentials() -> FallbackCredentials:
        return FallbackCredentials(
            user=DEFAULT_FALLBACK_USER,
            password=DEFAULT_FALLBACK_PASSWORD,
            source="default",
        )


__all__ = [
    "CredentialResolver",
    "DEFAULT_FALLBACK_PASSWORD",
    "DEFAULT_FALLBACK_USER",
    "credential_field",
    "normalize_credential_value",
]
