"""
Pytest configuration and fixtures for passthru tests.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Generator
from unittest.mock import patch

import pytest

from passthru.cache.store import ArtifactStore
from passthru.config import Settings, clear_settings_cache
from passthru.exceptions import PassthruError
from passthru.upstream.downloader import Download
from passthru.upstream.resolver import ResolverResponse

SOURCE_URL = "https://example.com/v1"
RESOURCE_URL = "https://cdn.example.com/file.mp4"


class FakeResolver:
    """Instrumented resolver: records calls, can block on a gate or fail."""

    def __init__(
        self,
        url: str = RESOURCE_URL,
        error: PassthruError | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.url = url
        self.error = error
        self.gate = gate
        self.calls: list[str] = []

    async def resolve(self, source_url: str) -> ResolverResponse:
        self.calls.append(source_url)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ResolverResponse(status="tunnel", url=self.url, filename="file.mp4")


class FakeDownloader:
    """Instrumented downloader yielding a fixed body in chunks."""

    def __init__(
        self,
        body: bytes = b"resource-bytes" * 64,
        headers: list[tuple[str, str]] | None = None,
        chunk_size: int = 100,
        error: PassthruError | None = None,
    ) -> None:
        self.body = body
        self.headers = headers if headers is not None else [
            ("Content-Type", "video/mp4"),
            ("Cache-Control", "max-age=60"),
        ]
        self.chunk_size = chunk_size
        self.error = error
        self.calls: list[str] = []

    async def _chunks(self) -> AsyncIterator[bytes]:
        for i in range(0, len(self.body), self.chunk_size):
            await asyncio.sleep(0)
            yield self.body[i : i + self.chunk_size]
        if self.error is not None:
            raise self.error

    @asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[Download]:
        self.calls.append(url)
        yield Download(
            url=url,
            status_code=200,
            headers=list(self.headers),
            chunks=self._chunks(),
        )


async def async_chunks(*parts: bytes) -> AsyncIterator[bytes]:
    """Turn byte strings into an async chunk iterator."""
    for part in parts:
        yield part


def set_mtime(path: Path, when: datetime) -> None:
    """Backdate a file's access and modification times."""
    ts = when.timestamp()
    os.utime(path, (ts, ts))


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def storage_dir(temp_dir: Path) -> Path:
    """Storage root for the artifact store."""
    return temp_dir / "storage"


@pytest.fixture
async def store(storage_dir: Path) -> ArtifactStore:
    """Create an initialized artifact store."""
    artifact_store = ArtifactStore(storage_dir)
    await artifact_store.init()
    return artifact_store


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "RESOLVER_ENDPOINT": "http://resolver.test/api",
        "STORAGE_DIR": ".test_storage",
        "RETENTION_MINUTES": "720",
        "SWEEP_INTERVAL_SECONDS": "600",
        "METRICS_PORT": "0",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(
    mock_env_vars: dict[str, str], storage_dir: Path
) -> Generator[Settings, None, None]:
    """Provide a Settings instance that stores artifacts under temp_dir."""
    with patch.dict(os.environ, {"STORAGE_DIR": str(storage_dir)}):
        clear_settings_cache()
        from passthru.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
