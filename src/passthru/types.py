"""
Core types for the passthrough proxy.

This module defines the data structures shared across the cache engine:
- Enums for cache status
- Frozen dataclasses for artifact handles, listing entries and fetch outcomes
- Mutable dataclass for sweep reports
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from uuid6 import uuid7

# Ordered (name, value) pairs as captured from an upstream response
HeaderList = list[tuple[str, str]]


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "req")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp (e.g. st_mtime) to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class CacheStatus(str, Enum):
    """How a request was satisfied."""

    CACHED = "cached"
    NOT_CACHED = "not_cached"


@dataclass(frozen=True)
class ArtifactHandle:
    """A complete artifact on disk, ready to be served.

    Attributes:
        key: Cache key the artifact is stored under.
        payload_path: Path to the payload record.
        headers: Header manifest in original order.
        size: Payload size in bytes.
        last_write: Payload last-write time (UTC).
    """

    key: str
    payload_path: Path
    headers: HeaderList
    size: int
    last_write: datetime

    def header_values(self, name: str) -> list[str]:
        """Return all values recorded for a header name (case-insensitive)."""
        lowered = name.lower()
        return [value for header, value in self.headers if header.lower() == lowered]


@dataclass(frozen=True)
class ObtainResult:
    """Outcome of FetchCoordinator.obtain()."""

    handle: ArtifactHandle
    served_from_cache: bool

    @property
    def cache_status(self) -> CacheStatus:
        return CacheStatus.CACHED if self.served_from_cache else CacheStatus.NOT_CACHED


@dataclass(frozen=True)
class CacheEntry:
    """One artifact as seen by a storage listing pass."""

    key: str
    last_write: datetime


@dataclass
class SweepReport:
    """Counters collected during one eviction sweep."""

    started_at: datetime = field(default_factory=utc_now)
    cutoff: datetime | None = None
    examined: int = 0
    removed: int = 0
    skipped: int = 0  # expired at listing time, fresh again at delete time
    failed: int = 0
    temporaries_purged: int = 0

    def to_dict(self) -> dict[str, int | str | None]:
        return {
            "started_at": self.started_at.isoformat(),
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "examined": self.examined,
            "removed": self.removed,
            "skipped": self.skipped,
            "failed": self.failed,
            "temporaries_purged": self.temporaries_purged,
        }
