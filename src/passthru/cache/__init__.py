"""
Cache package for the download engine.

This package provides:
- Key derivation (keys.py): SHA-256 cache keys for source URLs
- Artifact store (store.py): payload + header manifest records on local disk
- Fetch coordinator (coordinator.py): one in-flight fetch per key
- Eviction sweeper (sweeper.py): periodic time-based purge
"""

from passthru.cache.coordinator import FetchCoordinator
from passthru.cache.keys import derive_key, is_valid_key
from passthru.cache.store import ArtifactStore
from passthru.cache.sweeper import EvictionSweeper

__all__ = [
    "ArtifactStore",
    "EvictionSweeper",
    "FetchCoordinator",
    "derive_key",
    "is_valid_key",
]
