"""
Prometheus metrics for the proxy.

Counters mirror what operators watch on the running service: request mix by
cache status, calls to the resolver, sweeps, and files evicted.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, start_http_server

from passthru.logging import get_logger
from passthru.types import CacheStatus

logger = get_logger(__name__)

HTTP_REQUESTS = Counter(
    "passthru_http_requests_total",
    "Total number of HTTP requests to the service",
    ["path", "cache_status"],
)

RESOLVER_REQUESTS = Counter(
    "passthru_resolver_requests_total",
    "Total number of HTTP requests to the resolver service",
)

CLEANUPS = Counter(
    "passthru_cleanups_total",
    "Total number of eviction sweeps run",
)

FILES_CLEANED = Counter(
    "passthru_files_cleaned_total",
    "Total number of artifacts evicted",
)


def init_metrics(paths: tuple[str, ...] = ("/",)) -> None:
    """Pre-create label combinations so they export as zero before first use."""
    for path in paths:
        for status in CacheStatus:
            HTTP_REQUESTS.labels(path=path, cache_status=status.value)


def start_metrics_server(
    port: int,
    host: str = "0.0.0.0",
    registry: CollectorRegistry = REGISTRY,
) -> bool:
    """Start the Prometheus scrape endpoint in a background thread.

    Args:
        port: Port to bind. 0 disables the endpoint.
        host: Host to bind.
        registry: Registry to expose.

    Returns:
        True if the server was started.
    """
    if port == 0:
        logger.info("Metrics server disabled")
        return False

    try:
        start_http_server(port, addr=host, registry=registry)
    except OSError as e:
        logger.error("Failed to start metrics server", port=port, error=str(e))
        return False

    logger.info("Metrics server started", addr=f"{host}:{port}")
    return True
