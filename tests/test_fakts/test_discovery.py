"""Tests for endpoint discovery."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from fakes import BASE_URL, FakeFaktsServer
from faktsflow.cancel import CancelToken
from faktsflow.exceptions import (
    Cancelled,
    DiscoveryInvalidResponse,
    DiscoveryUnreachable,
    InvalidUsageError,
)
from faktsflow.fakts.discovery import discover, normalize_url
from faktsflow.models import FaktsRoutes


# -------------------------------------------------------------------------
# URL normalisation
# -------------------------------------------------------------------------


class TestNormalizeUrl:
    def test_adds_trailing_slash(self) -> None:
        assert normalize_url("https://example.org") == ["https://example.org/"]

    def test_keeps_path(self) -> None:
        assert normalize_url("  http://lab.local:8000/f ") == ["http://lab.local:8000/f/"]

    def test_expands_missing_scheme(self) -> None:
        assert normalize_url("go.example.org") == [
            "https://go.example.org/",
            "http://go.example.org/",
        ]

    def test_custom_protocols(self) -> None:
        assert normalize_url("localhost:8000", ["http"]) == ["http://localhost:8000/"]

    def test_drops_query(self) -> None:
        assert normalize_url("https://example.org/f?x=1") == ["https://example.org/f/"]

    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.org", "https://"])
    def test_rejects_invalid(self, url: str) -> None:
        with pytest.raises(InvalidUsageError):
            normalize_url(url)


# -------------------------------------------------------------------------
# discover()
# -------------------------------------------------------------------------


class TestDiscover:
    async def test_fast_endpoint_returns_descriptor(self, server: FakeFaktsServer) -> None:
        server.discovery_delay = 0.05
        async with server.client() as http:
            endpoint = await discover("https://example.org", timeout=2.0, http=http)
        assert endpoint.base_url == BASE_URL
        assert endpoint.name == "example"
        assert str(server.requests[0].url) == "https://example.org/.well-known/fakts"

    async def test_silent_endpoint_times_out_on_deadline(self, server: FakeFaktsServer) -> None:
        server.discovery_hangs = True
        async with server.client() as http:
            started = time.monotonic()
            with pytest.raises(DiscoveryUnreachable):
                await discover("https://example.org", timeout=2.0, http=http)
            elapsed = time.monotonic() - started
        assert 1.9 <= elapsed < 2.5

    async def test_falls_back_to_next_protocol(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.scheme == "https":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"name": "plain"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            endpoint = await discover("lab.local:8000", http=http)
        assert endpoint.base_url == "http://lab.local:8000/"
        assert endpoint.name == "plain"

    async def test_all_candidates_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(DiscoveryUnreachable):
                await discover("lab.local", http=http)

    async def test_non_json_body_is_invalid(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>hello</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(DiscoveryInvalidResponse):
                await discover("https://example.org", http=http)

    async def test_invalid_descriptor(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"base_url": "not a url"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(DiscoveryInvalidResponse):
                await discover("https://example.org", http=http)

    async def test_error_status_is_invalid(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"detail": "missing"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(DiscoveryInvalidResponse, match="404"):
                await discover("https://example.org", http=http)

    async def test_request_timeout_follows_discovery_budget(self) -> None:
        seen: list[dict[str, float]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.extensions["timeout"])
            return httpx.Response(200, json={"name": "budget"})

        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, timeout=0.1) as http:
            await discover("https://example.org", timeout=2.0, http=http)
        assert 1.5 < seen[0]["read"] <= 2.0

    async def test_custom_well_known_route(self, server: FakeFaktsServer) -> None:
        routes = FaktsRoutes(well_known="api/.well-known/fakts")
        async with server.client() as http:
            await discover("https://example.org", http=http, routes=routes)
        assert str(server.requests[0].url) == "https://example.org/api/.well-known/fakts"

    async def test_cancel_stops_discovery(self, server: FakeFaktsServer) -> None:
        server.discovery_hangs = True
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        async with server.client() as http:
            started = time.monotonic()
            with pytest.raises(Cancelled):
                await discover("https://example.org", timeout=5.0, cancel=token, http=http)
        assert time.monotonic() - started < 1.0

    async def test_invalid_url_fails_before_network(self, server: FakeFaktsServer) -> None:
        async with server.client() as http:
            with pytest.raises(InvalidUsageError):
                await discover("ftp://example.org", http=http)
        assert server.requests == []
