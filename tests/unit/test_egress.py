"""
Unit tests for the outbound fetch filter.

The real network is never touched: httpx.MockTransport stands in for the
wire, and every blocked case must fail before the mock is ever called.
"""

from unittest.mock import Mock

import httpx
import pytest

from docstorage.infrastructure.http import egress
from docstorage.infrastructure.http.egress import (
    EgressBlockedError,
    EgressPolicy,
    fetch_remote_object,
    is_public_address,
)

PUBLIC_URL = "http://93.184.216.34/file.pdf"


def ok_handler() -> Mock:
    return Mock(return_value=httpx.Response(
        200,
        content=b"%PDF-1.7",
        headers={"content-type": "application/pdf"},
    ))


class TestIsPublicAddress:
    """Tests for address classification."""

    @pytest.mark.parametrize(
        "address",
        ["93.184.216.34", "8.8.8.8", "2606:4700:4700::1111"],
    )
    def test_public_addresses(self, address):
        assert is_public_address(address)

    @pytest.mark.parametrize(
        "address",
        [
            "127.0.0.1",
            "10.1.2.3",
            "172.16.0.1",
            "192.168.1.1",
            "169.254.169.254",
            "100.64.0.1",
            "0.0.0.0",
            "224.0.0.1",
            "::1",
            "fd00::1",
            "fe80::1",
            "::ffff:127.0.0.1",
        ],
    )
    def test_non_public_addresses(self, address):
        assert not is_public_address(address)


class TestEgressFilter:
    """Tests for destinations the filter must refuse."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [
            "http://127.0.0.1/",
            "http://localhost/",
            "http://169.254.169.254/latest/meta-data/",
            "http://10.0.0.5/internal",
            "http://[::1]/",
        ],
    )
    async def test_private_destinations_are_blocked(self, url):
        handler = ok_handler()

        with pytest.raises(EgressBlockedError):
            await fetch_remote_object(url, transport=httpx.MockTransport(handler))

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_disallowed_port_is_blocked(self):
        handler = ok_handler()

        with pytest.raises(EgressBlockedError, match="Port not allowed"):
            await fetch_remote_object(
                "http://93.184.216.34:6379/",
                transport=httpx.MockTransport(handler),
            )

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_scheme_restriction(self):
        policy = EgressPolicy(allowed_schemes=frozenset({"https"}))

        with pytest.raises(EgressBlockedError, match="Scheme not allowed"):
            await fetch_remote_object(
                PUBLIC_URL,
                policy=policy,
                transport=httpx.MockTransport(ok_handler()),
            )

    @pytest.mark.asyncio
    async def test_redirect_to_private_address_is_blocked(self):
        """Each redirect hop is checked, not just the first URL."""
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(302, headers={"location": "http://10.0.0.1/secret"})

        with pytest.raises(EgressBlockedError):
            await fetch_remote_object(PUBLIC_URL, transport=httpx.MockTransport(handler))

        assert seen == [PUBLIC_URL]

    @pytest.mark.asyncio
    async def test_private_addresses_can_be_allowed(self):
        policy = EgressPolicy(allow_private_addresses=True)

        remote = await fetch_remote_object(
            "http://127.0.0.1/file.pdf",
            policy=policy,
            transport=httpx.MockTransport(ok_handler()),
        )

        assert remote.body == b"%PDF-1.7"


class TestAddressPinning:
    """The connection goes to the address that passed the check."""

    @pytest.fixture
    def rebinding_dns(self, monkeypatch):
        """Resolver that answers public first and loopback afterwards."""
        answers = iter(["93.184.216.34", "127.0.0.1", "127.0.0.1"])
        lookups: list[str] = []

        async def fake_resolve_host(host: str, port: int) -> list[str]:
            lookups.append(host)
            return [next(answers)]

        monkeypatch.setattr(egress, "resolve_host", fake_resolve_host)
        return lookups

    @pytest.mark.asyncio
    async def test_rebinding_host_cannot_reach_loopback(self, rebinding_dns):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"public")

        remote = await fetch_remote_object(
            "http://rebind.example:8080/file",
            policy=EgressPolicy(allowed_ports=frozenset({8080})),
            transport=httpx.MockTransport(handler),
        )

        assert remote.body == b"public"
        assert rebinding_dns == ["rebind.example"]
        assert seen[0].url.host == "93.184.216.34"
        assert seen[0].url.port == 8080
        assert seen[0].headers["host"] == "rebind.example:8080"

    @pytest.mark.asyncio
    async def test_each_request_is_resolved_and_checked(self, rebinding_dns):
        """A later answer pointing at loopback is refused, not cached past the check."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"x"))

        await fetch_remote_object("http://rebind.example/", transport=transport)
        with pytest.raises(EgressBlockedError):
            await fetch_remote_object("http://rebind.example/", transport=transport)

    @pytest.mark.asyncio
    async def test_https_keeps_server_name(self, monkeypatch):
        async def fake_resolve_host(host: str, port: int) -> list[str]:
            return ["2606:2800:220:1:248:1893:25c8:1946"]

        monkeypatch.setattr(egress, "resolve_host", fake_resolve_host)
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        await fetch_remote_object("https://files.example.com/a.png", transport=httpx.MockTransport(handler))

        assert seen[0].url.host == "2606:2800:220:1:248:1893:25c8:1946"
        assert seen[0].extensions["sni_hostname"] == "files.example.com"
        assert seen[0].headers["host"] == "files.example.com"


class TestFetchRemoteObject:
    """Tests for buffering allowed responses."""

    @pytest.mark.asyncio
    async def test_buffers_body_and_metadata(self):
        remote = await fetch_remote_object(PUBLIC_URL, transport=httpx.MockTransport(ok_handler()))

        assert remote.body == b"%PDF-1.7"
        assert remote.content_type == "application/pdf"
        assert remote.content_length == len(b"%PDF-1.7")

    @pytest.mark.asyncio
    async def test_missing_content_type_defaults_to_octet_stream(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"raw"))

        remote = await fetch_remote_object(PUBLIC_URL, transport=transport)

        assert remote.content_type == "application/octet-stream"

    @pytest.mark.asyncio
    async def test_follows_public_redirects(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": PUBLIC_URL})
            return httpx.Response(200, content=b"moved")

        remote = await fetch_remote_object(
            "http://93.184.216.34/old",
            transport=httpx.MockTransport(handler),
        )

        assert remote.body == b"moved"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))

        with pytest.raises(httpx.HTTPStatusError):
            await fetch_remote_object(PUBLIC_URL, transport=transport)
