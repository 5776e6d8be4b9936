"""
HTTP front end of the proxy.

GET /?u=<source URL> derives the cache key, obtains the artifact through the
fetch coordinator and serves the payload with its recorded headers.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, BinaryIO, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from passthru import __version__
from passthru.cache.coordinator import Downloader, FetchCoordinator, Resolver
from passthru.cache.keys import derive_key
from passthru.cache.store import ArtifactStore
from passthru.cache.sweeper import EvictionSweeper
from passthru.config import Settings, get_settings
from passthru.exceptions import ArtifactNotFoundError, InvalidRequestError, PassthruError
from passthru.logging import get_logger, log_context
from passthru.metrics import HTTP_REQUESTS, init_metrics
from passthru.types import ArtifactHandle, CacheStatus, generate_id
from passthru.upstream.downloader import HttpDownloader
from passthru.upstream.resolver import CobaltResolver

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024

# Framing headers the server recomputes for the stored payload
SKIPPED_HEADERS = {
    "connection",
    "content-length",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


async def iter_payload(payload: BinaryIO) -> AsyncIterator[bytes]:
    """Read an open payload in chunks, closing it when done."""
    try:
        while True:
            chunk = await asyncio.to_thread(payload.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        payload.close()


def artifact_response(
    handle: ArtifactHandle, payload: BinaryIO, cache_status: CacheStatus
) -> StreamingResponse:
    """Build a response that streams an open payload with its stored headers.

    The open file stays readable if the artifact is evicted after the lookup.
    The first value of each header name goes in at construction time; later
    values of a repeated name are appended in order.
    """
    first: dict[str, str] = {}
    seen: set[str] = set()
    repeats: list[tuple[str, str]] = []

    for name, value in handle.headers:
        lowered = name.lower()
        if lowered in SKIPPED_HEADERS:
            continue
        if lowered in seen:
            repeats.append((name, value))
        else:
            seen.add(lowered)
            first[name] = value

    first["Content-Length"] = str(handle.size)
    response = StreamingResponse(
        iter_payload(payload),
        headers=first,
        background=BackgroundTask(payload.close),
    )
    for name, value in repeats:
        response.headers.append(name, value)
    response.headers["X-Cache"] = "HIT" if cache_status == CacheStatus.CACHED else "MISS"
    return response


def create_app(
    settings: Settings | None = None,
    *,
    store: ArtifactStore | None = None,
    resolver: Resolver | None = None,
    downloader: Downloader | None = None,
    start_sweeper: bool = True,
) -> FastAPI:
    """Create the proxy application.

    Components not passed in are built from settings when the app starts.

    Args:
        settings: Settings to use (defaults to get_settings()).
        store: Artifact store.
        resolver: Resolver capability.
        downloader: Downloader capability.
        start_sweeper: Whether to run the periodic eviction task.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = settings or get_settings()

        app_store = store or ArtifactStore(cfg.STORAGE_DIR)
        await app_store.init()

        app_resolver = resolver or CobaltResolver(
            cfg.RESOLVER_ENDPOINT,
            video_quality=cfg.VIDEO_QUALITY,
            disable_metadata=cfg.DISABLE_METADATA,
            timeout=cfg.RESOLVER_TIMEOUT_SECONDS,
        )
        app_downloader = downloader or HttpDownloader()

        coordinator = FetchCoordinator(
            app_store,
            app_resolver,
            app_downloader,
            fetch_timeout=cfg.FETCH_TIMEOUT_SECONDS,
        )
        sweeper = EvictionSweeper(app_store, cfg.retention, cfg.sweep_interval)

        app.state.store = app_store
        app.state.coordinator = coordinator
        app.state.sweeper = sweeper

        init_metrics()
        if start_sweeper:
            sweeper.start()

        logger.info(
            "Proxy started",
            endpoint=cfg.RESOLVER_ENDPOINT,
            storage=str(cfg.STORAGE_DIR),
        )
        try:
            yield
        finally:
            await sweeper.stop()
            await coordinator.close()
            if resolver is None:
                await app_resolver.close()
            if downloader is None:
                await app_downloader.close()
            logger.info("Proxy stopped")

    app = FastAPI(title="passthru", version=__version__, lifespan=lifespan)

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(
        request: Request, exc: InvalidRequestError
    ) -> PlainTextResponse:
        return PlainTextResponse(exc.message, status_code=400)

    @app.exception_handler(PassthruError)
    async def passthru_error_handler(
        request: Request, exc: PassthruError
    ) -> PlainTextResponse:
        # Never echo paths or resolver responses back to the caller
        return PlainTextResponse("Failed to fetch resource", status_code=500)

    @app.get("/")
    async def handle_request(
        request: Request,
        u: Optional[str] = Query(default=None, description="Source URL"),
    ) -> StreamingResponse:
        start = time.perf_counter()

        with log_context(request_id=generate_id("req")):
            if not u or not u.strip():
                logger.warning("Missing query param", param="u")
                raise InvalidRequestError("'u' parameter is required")

            logger.info("Request received", method=request.method, u=u)
            coordinator: FetchCoordinator = request.app.state.coordinator
            artifact_store: ArtifactStore = request.app.state.store
            key = derive_key(u)

            try:
                result = await coordinator.obtain(key, u)
                try:
                    handle, payload = await artifact_store.open(key)
                except ArtifactNotFoundError:
                    # Evicted between lookup and open; fetch it again
                    logger.info("Artifact gone before it could be served")
                    result = await coordinator.obtain(key, u)
                    handle, payload = await artifact_store.open(key)
            except PassthruError:
                HTTP_REQUESTS.labels(
                    path=request.url.path, cache_status=CacheStatus.NOT_CACHED.value
                ).inc()
                raise

            HTTP_REQUESTS.labels(
                path=request.url.path, cache_status=result.cache_status.value
            ).inc()
            logger.info(
                "Request processed",
                cache_status=result.cache_status.value,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            return artifact_response(handle, payload, result.cache_status)

    @app.get("/healthz")
    async def healthz(request: Request) -> JSONResponse:
        coordinator: FetchCoordinator = request.app.state.coordinator
        return JSONResponse(
            {"status": "ok", "inflight": len(coordinator.inflight_keys())}
        )

    return app
