"""Tests for claiming the fakts configuration."""

from __future__ import annotations

import json

import httpx
import pytest

from fakes import TOKEN_URL, FakeFaktsServer
from faktsflow.exceptions import ClaimFailed
from faktsflow.fakts.claim import claim
from faktsflow.models import EndpointDescriptor


class TestClaim:
    async def test_returns_validated_fakts(
        self, server: FakeFaktsServer, http: httpx.AsyncClient, endpoint: EndpointDescriptor
    ) -> None:
        fakts = await claim(endpoint, "issued-token", http=http)
        assert fakts.auth.token_url == TOKEN_URL
        assert set(fakts.instances) == {"lok", "mikro", "kabinet"}
        assert fakts.self_ is not None and fakts.self_.deployment_name == "example"
        assert json.loads(server.requests[-1].content)["token"] == "issued-token"

    @pytest.mark.parametrize(
        "reply, message",
        [
            ({"status": "denied", "message": "token expired"}, "token expired"),
            ({"status": "granted"}, "config"),
            ({"status": "granted", "config": {"instances": {}}}, "invalid"),
            (403, "403"),
        ],
    )
    async def test_failures(
        self,
        server: FakeFaktsServer,
        http: httpx.AsyncClient,
        endpoint: EndpointDescriptor,
        reply: object,
        message: str,
    ) -> None:
        server.claim_reply = reply
        with pytest.raises(ClaimFailed, match=message):
            await claim(endpoint, "issued-token", http=http)

    async def test_transport_error(
        self, server: FakeFaktsServer, http: httpx.AsyncClient, endpoint: EndpointDescriptor
    ) -> None:
        server.claim_reply = httpx.ReadError("connection reset")
        with pytest.raises(ClaimFailed, match="connection reset"):
            await claim(endpoint, "issued-token", http=http)
