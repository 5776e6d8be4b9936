"""
Resolver client for the extraction service.

POSTs the source URL to the configured endpoint and returns the direct
resource URL it answers with. Failures are never retried here; the next
client request is free to try again.
"""

from __future__ import annotations

from urllib.parse import urlparse

import httpx
import orjson
from pydantic import BaseModel, ConfigDict, ValidationError

from passthru.exceptions import ResolverError
from passthru.logging import get_logger
from passthru.metrics import RESOLVER_REQUESTS

logger = get_logger(__name__)

USER_AGENT = "passthru/1.0"

REQUEST_TIMEOUT = 30.0


class ResolverResponse(BaseModel):
    """JSON body returned by the extraction service."""

    model_config = ConfigDict(extra="ignore")

    status: str = ""
    url: str = ""
    filename: str = ""


class CobaltResolver:
    """Client for a cobalt-style extraction API.

    Request body: {"url", "videoQuality", "disableMetadata"}
    Response body: {"status", "url", "filename"}
    """

    def __init__(
        self,
        endpoint: str,
        video_quality: str = "max",
        disable_metadata: bool = True,
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            endpoint: URL the request is POSTed to.
            video_quality: Value sent as videoQuality.
            disable_metadata: Value sent as disableMetadata.
            timeout: Request timeout in seconds.
            client: Pre-built HTTP client (tests inject a mock transport).
        """
        self.endpoint = endpoint
        self.video_quality = video_quality
        self.disable_metadata = disable_metadata
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this resolver created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def resolve(self, source_url: str) -> ResolverResponse:
        """Resolve a source URL to a direct resource URL.

        Args:
            source_url: URL supplied by the client.

        Returns:
            Parsed resolver response with a non-empty http(s) `url`.

        Raises:
            ResolverError: On transport failure, non-200 status, undecodable
                body, an "error" status, or a missing resource URL.
        """
        client = await self._get_client()
        payload = {
            "url": source_url,
            "videoQuality": self.video_quality,
            "disableMetadata": self.disable_metadata,
        }

        RESOLVER_REQUESTS.inc()
        logger.info("Resolver request", method="POST", endpoint=self.endpoint)

        try:
            response = await client.post(
                self.endpoint,
                content=orjson.dumps(payload),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error("Resolver request failed", error=type(e).__name__)
            raise ResolverError(
                "Failed to call resolver",
                context={"endpoint": self.endpoint, "error": type(e).__name__},
            ) from e

        if response.status_code != httpx.codes.OK:
            # Resolver body stays out of the error
            logger.warning("Resolver returned non-200", status_code=response.status_code)
            raise ResolverError(
                "Error from resolver",
                context={"endpoint": self.endpoint, "status_code": response.status_code},
            )

        try:
            resolved = ResolverResponse.model_validate(orjson.loads(response.content))
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.warning("Resolver response could not be decoded")
            raise ResolverError(
                "Failed to decode resolver response",
                context={"endpoint": self.endpoint},
            ) from e

        if resolved.status == "error":
            raise ResolverError(
                "Resolver reported an error",
                context={"endpoint": self.endpoint, "status": resolved.status},
            )

        try:
            parsed = urlparse(resolved.url)
            usable = parsed.scheme in ("http", "https") and bool(parsed.netloc)
        except ValueError:
            usable = False
        if not usable:
            raise ResolverError(
                "Resolver response has no usable resource URL",
                context={"endpoint": self.endpoint, "status": resolved.status},
            )

        logger.debug("Resolved", status=resolved.status, filename=resolved.filename)
        return resolved
