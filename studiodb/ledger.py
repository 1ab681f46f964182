"""Bounded in-memory record of fallback credential usage."""

from __future__ import annotations

import itertools
import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, get_args

from .models import CredentialType, FallbackUsageEntry

LOG = logging.getLogger(__name__)

MAX_LEDGER_ENTRIES = 1000
DEFAULT_RECENT_LIMIT = 100
MOST_COMMON_REASONS_LIMIT = 10

_CREDENTIAL_TYPES = frozenset(get_args(CredentialType))


@dataclass(frozen=True, slots=True)
class ReasonCount:
    """How many times a fallback reason was recorded."""

    reason: str
    count: int


@dataclass(frozen=True, slots=True)
class FallbackUsageStats:
    """Aggregate view over the ledger."""

    total_entries: int
    unique_projects: int
    recent_usage: tuple[FallbackUsageEntry, ...]
    most_common_reasons: tuple[ReasonCount, ...]


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class FallbackUsageLedger:
    """Append-only ring buffer of :class:`FallbackUsageEntry` records.

    Once ``max_entries`` is exceeded the oldest entries are evicted, so the
    ledger always holds the most recent appends. Ordering is by insertion; the
    sequence number breaks ties between entries stamped in the same instant.
    """

    def __init__(
        self,
        *,
        max_entries: int = MAX_LEDGER_ENTRIES,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._entries: deque[FallbackUsageEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self._sequence = itertools.count(1)

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or MAX_LEDGER_ENTRIES

    def __len__(self) -> int:
        return len(self._entries)

    def log_fallback_usage(
        self,
        project_ref: str,
        reason: str,
        credential_type: CredentialType = "both",
    ) -> FallbackUsageEntry:
        """Record that ``project_ref`` fell back to administrative credentials."""

        if credential_type not in _CREDENTIAL_TYPES:
            raise ValueError(f"Unknown credential type '{credential_type}'.")
        entry = FallbackUsageEntry(
            project_ref=project_ref,
            reason=reason,
            credential_type=credential_type,
            timestamp=self._clock().isoformat(),
            sequence=next(self._sequence),
        )
        self._entries.append(entry)
        LOG.info(
            "Fallback credentials used",
            extra={
                "project_ref": project_ref,
                "reason": reason,
                "credential_type": credential_type,
                "fallback_timestamp": entry.timestamp,
            },
        )
        return entry

    def get_recent_fallback_usage(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[FallbackUsageEntry]:
        """Most recent entries first, at most ``limit`` of them."""

        if limit <= 0:
            return []
        return list(itertools.islice(reversed(self._entries), limit))

    def get_fallback_usage_stats(self) -> FallbackUsageStats:
        # Counter preserves first-seen order, and most_common() is a stable
        # sort, so equal counts keep that order.
        reasons = Counter(entry.reason for entry in self._entries)
        return FallbackUsageStats(
            total_entries=len(self._entries),
            unique_projects=len({entry.project_ref for entry in self._entries}),
            recent_usage=tuple(self.get_recent_fallback_usage(DEFAULT_RECENT_LIMIT)),
            most_common_reasons=tuple(
                ReasonCount(reason=reason, count=count)
                for reason, count in reasons.most_common(MOST_COMMON_REASONS_LIMIT)
            ),
        )

    def clear_fallback_usage_log(self) -> None:
        """Drop every entry (administrative reset and test isolation)."""

        self._entries.clear()


__all__ = [
    "DEFAULT_RECENT_LIMIT",
    "FallbackUsageLedger",
    "FallbackUsageStats",
    "MAX_LEDGER_ENTRIES",
    "MOST_COMMON_REASONS_LIMIT",
    "ReasonCount",
]
