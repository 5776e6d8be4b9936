"""
Fetch coordinator: one resolve/download/store sequence per key at a time.

The first request that misses the cache for a key becomes the leader and
starts a fetch task registered under that key. Requests arriving while the
task runs join it as followers and receive the leader's outcome, success or
error, without doing any network or disk work of their own.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from typing import Protocol

from passthru.cache.store import ArtifactStore
from passthru.exceptions import ArtifactNotFoundError, FetchTimeoutError, PassthruError
from passthru.logging import get_logger, log_context
from passthru.types import ArtifactHandle, ObtainResult
from passthru.upstream.downloader import Download
from passthru.upstream.resolver import ResolverResponse

logger = get_logger(__name__)

DEFAULT_FETCH_TIMEOUT = 300.0


class Resolver(Protocol):
    """Turns a source URL into a direct resource URL."""

    async def resolve(self, source_url: str) -> ResolverResponse: ...


class Downloader(Protocol):
    """Opens a streaming download of a resolved resource."""

    def open(self, url: str) -> AbstractAsyncContextManager[Download]: ...


class FetchCoordinator:
    """Serves artifacts from the store, coalescing concurrent misses per key.

    The in-flight table maps a cache key to the task fetching it. Check and
    insert happen without an intervening await, so on a single event loop
    the table never holds two tasks for one key, and keys never wait on
    each other.
    """

    def __init__(
        self,
        store: ArtifactStore,
        resolver: Resolver,
        downloader: Downloader,
        fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Artifact store to read from and populate.
            resolver: Resolver capability.
            downloader: Downloader capability.
            fetch_timeout: Seconds allowed for one leader sequence (None: no limit).
        """
        self.store = store
        self.resolver = resolver
        self.downloader = downloader
        self.fetch_timeout = fetch_timeout
        self._inflight: dict[str, asyncio.Task[ObtainResult]] = {}

    def inflight_keys(self) -> list[str]:
        """Keys with a fetch currently running."""
        return list(self._inflight)

    async def obtain(self, key: str, source_url: str) -> ObtainResult:
        """Return the artifact for key, fetching it if necessary.

        Args:
            key: Cache key derived from source_url.
            source_url: URL to resolve on a miss.

        Returns:
            ObtainResult with served_from_cache=True on a hit.

        Raises:
            PassthruError: The leader's failure, delivered to every waiter.
        """
        with log_context(cache_key=key):
            cached = await self._read_cached(key)
            if cached is not None:
                logger.info("Serving cached artifact", size=cached.size)
                return ObtainResult(handle=cached, served_from_cache=True)

            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(
                    self._lead(key, source_url), name=f"fetch-{key[:12]}"
                )
                task.add_done_callback(self._consume_outcome)
                self._inflight[key] = task
                logger.info("Cache miss, starting fetch", role="leader")
            else:
                logger.info("Cache miss, joining in-flight fetch", role="follower")

            # A caller going away must not cancel work other callers share
            return await asyncio.shield(task)

    async def _read_cached(self, key: str) -> ArtifactHandle | None:
        if not await self.store.exists(key):
            return None
        try:
            return await self.store.read(key)
        except ArtifactNotFoundError:
            # Lost a race with the sweeper; treat as a miss
            logger.debug("Artifact vanished between exists and read")
            return None

    async def _lead(self, key: str, source_url: str) -> ObtainResult:
        try:
            # A fetch that finished just before this task was created has
            # already published the artifact
            cached = await self._read_cached(key)
            if cached is not None:
                return ObtainResult(handle=cached, served_from_cache=True)

            try:
                async with asyncio.timeout(self.fetch_timeout):
                    handle = await self._fetch(key, source_url)
            except TimeoutError as e:
                raise FetchTimeoutError(
                    "Fetch timed out",
                    context={"key": key, "timeout_seconds": self.fetch_timeout},
                ) from e

            logger.info("Fetch complete", size=handle.size)
            return ObtainResult(handle=handle, served_from_cache=False)
        except PassthruError as e:
            logger.warning("Fetch failed", error_type=type(e).__name__, error=e.message)
            raise
        finally:
            self._inflight.pop(key, None)

    async def _fetch(self, key: str, source_url: str) -> ArtifactHandle:
        resolved = await self.resolver.resolve(source_url)
        async with self.downloader.open(resolved.url) as download:
            return await self.store.write(key, download.chunks, download.headers)

    @staticmethod
    def _consume_outcome(task: asyncio.Task[ObtainResult]) -> None:
        # Every waiter may have disconnected; mark the error as retrieved
        if not task.cancelled():
            task.exception()

    async def close(self) -> None:
        """Cancel fetches still running (used on shutdown)."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
