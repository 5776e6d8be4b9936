"""
Tests for the resolver client.
"""

from __future__ import annotations

import httpx
import orjson
import pytest
from prometheus_client import REGISTRY

from passthru.exceptions import ResolverError
from passthru.upstream.resolver import CobaltResolver

ENDPOINT = "http://resolver.test/api"


def make_resolver(handler, **kwargs) -> CobaltResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CobaltResolver(ENDPOINT, client=client, **kwargs)


def resolver_requests() -> float:
    return REGISTRY.get_sample_value("passthru_resolver_requests_total") or 0.0


class TestResolveSuccess:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_request_shape(self) -> None:
        """Body carries url, videoQuality and disableMetadata as JSON."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"status": "tunnel", "url": "https://cdn.test/a.mp4", "filename": "a.mp4"},
            )

        resolver = make_resolver(handler, video_quality="720", disable_metadata=False)
        result = await resolver.resolve("https://example.com/v1")

        assert result.url == "https://cdn.test/a.mp4"
        assert result.filename == "a.mp4"

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT
        assert request.headers["content-type"] == "application/json"
        assert request.headers["accept"] == "application/json"
        assert orjson.loads(request.content) == {
            "url": "https://example.com/v1",
            "videoQuality": "720",
            "disableMetadata": False,
        }

    @pytest.mark.asyncio
    async def test_extra_fields_ignored(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"status": "redirect", "url": "http://cdn.test/b", "picker": []},
            )

        result = await make_resolver(handler).resolve("https://example.com/v1")
        assert result.status == "redirect"
        assert result.filename == ""

    @pytest.mark.asyncio
    async def test_counts_requests(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "tunnel", "url": "https://cdn.test/a"})

        before = resolver_requests()
        await make_resolver(handler).resolve("https://example.com/v1")
        assert resolver_requests() == before + 1


class TestResolveFailures:
    """Every failure surfaces as ResolverError."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404, 500, 502, 201])
    async def test_non_200(self, status_code: int) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                status_code, json={"status": "tunnel", "url": "https://cdn.test/a"}
            )

        with pytest.raises(ResolverError) as exc_info:
            await make_resolver(handler).resolve("https://example.com/v1")
        assert exc_info.value.context["status_code"] == status_code

    @pytest.mark.asyncio
    async def test_error_body_not_leaked(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal secret /srv/data")

        with pytest.raises(ResolverError) as exc_info:
            await make_resolver(handler).resolve("https://example.com/v1")
        assert "secret" not in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"url": 5}', b""])
    async def test_undecodable_body(self, body: bytes) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        with pytest.raises(ResolverError):
            await make_resolver(handler).resolve("https://example.com/v1")

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"status": "error", "error": {"code": "error.api.link.invalid"}}
            )

        with pytest.raises(ResolverError, match="reported an error"):
            await make_resolver(handler).resolve("https://example.com/v1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        ["", "ftp://cdn.test/a", "/relative/path", "https://", "http://[broken/x"],
    )
    async def test_unusable_resource_url(self, url: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "tunnel", "url": url})

        with pytest.raises(ResolverError, match="no usable resource URL"):
            await make_resolver(handler).resolve("https://example.com/v1")

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ResolverError) as exc_info:
            await make_resolver(handler).resolve("https://example.com/v1")
        assert exc_info.value.context["error"] == "ConnectError"
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


class TestResolverClient:
    """Test client ownership."""

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200))
        )
        resolver = CobaltResolver(ENDPOINT, client=client)
        await resolver.close()
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self) -> None:
        resolver = CobaltResolver(ENDPOINT)
        client = await resolver._get_client()
        await resolver.close()
        assert client.is_closed
