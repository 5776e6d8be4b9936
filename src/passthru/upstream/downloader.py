"""
Streaming downloader for resolved resources.

Opens a GET against the resolved URL and hands the caller the response
headers plus an async iterator over the raw body, so the artifact store can
write it to disk without buffering it in memory.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from passthru.exceptions import DownloadError
from passthru.logging import get_logger
from passthru.types import HeaderList

logger = get_logger(__name__)

USER_AGENT = "passthru/1.0"

# Connect/pool are short; reads can stall between chunks of a large file
DEFAULT_TIMEOUT = httpx.Timeout(30.0, read=120.0)


@dataclass
class Download:
    """An open upstream response."""

    url: str
    status_code: int
    headers: HeaderList
    chunks: AsyncIterator[bytes]


class HttpDownloader:
    """Downloads resolved resources over HTTP(S)."""

    def __init__(
        self,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the downloader.

        Args:
            timeout: httpx timeout for the GET.
            client: Pre-built HTTP client (tests inject a mock transport).
        """
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this downloader created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    @asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[Download]:
        """Open a streaming GET for url.

        The body is read raw (no content decoding), so the stored bytes match
        the Content-Encoding header recorded alongside them.

        Raises:
            DownloadError: On transport failure or a non-2xx status, including
                failures while the body is being iterated.
        """
        client = await self._get_client()
        logger.info("Downloading resource", method="GET")

        try:
            async with client.stream(
                "GET", url, headers={"Accept-Encoding": "identity"}
            ) as response:
                if not response.is_success:
                    logger.warning("Download returned non-2xx", status_code=response.status_code)
                    raise DownloadError(
                        "Error status from resource host",
                        context={"status_code": response.status_code},
                    )

                headers = [
                    (name.decode("latin-1"), value.decode("latin-1"))
                    for name, value in response.headers.raw
                ]
                yield Download(
                    url=str(response.url),
                    status_code=response.status_code,
                    headers=headers,
                    chunks=self._iter_body(response),
                )
        except httpx.HTTPError as e:
            logger.error("Download failed", error=type(e).__name__)
            raise DownloadError(
                "Failed to download resource", context={"error": type(e).__name__}
            ) from e

    @staticmethod
    async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            raise DownloadError(
                "Download interrupted", context={"error": type(e).__name__}
            ) from e
