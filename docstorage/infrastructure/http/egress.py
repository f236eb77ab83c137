"""
Egress-filtered HTTP fetching.

Importing a file from a user-supplied URL is a server-side request on
behalf of the user. Without a guard, a URL such as http://169.254.169.254/
or http://localhost:6379/ reaches internal services (SSRF).

EgressFilteringTransport checks every outgoing request, including each
redirect hop, at send time:
- only allowed schemes and ports
- the host is resolved and every address must be publicly routable

The request is then sent to the validated address itself, with the
original Host header and TLS server name kept. The wrapped transport
never resolves the name again, so a DNS answer that changes between
check and connect (rebinding) cannot redirect the connection.

Blocked requests raise EgressBlockedError, an httpx.TransportError, so
callers handle them like any other fetch failure.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


class EgressBlockedError(httpx.TransportError):
    """Raised when a request targets a destination the policy forbids."""
    pass


@dataclass(frozen=True)
class EgressPolicy:
    """Which destinations outbound fetches may reach."""
    allowed_schemes: frozenset[str] = frozenset({"http", "https"})
    allowed_ports: frozenset[int] = frozenset({80, 443})
    allow_private_addresses: bool = False


@dataclass
class RemoteObject:
    """A fully buffered remote response body."""
    body: bytes
    content_type: str
    content_length: int


def is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_global and not ip.is_multicast


async def resolve_host(host: str, port: int) -> list[str]:
    """Addresses for host, in resolver order."""
    infos = await asyncio.get_running_loop().getaddrinfo(
        host, port, type=socket.SOCK_STREAM
    )
    # scope ids ("fe80::1%eth0") are dropped; they never belong to public addresses
    return [info[4][0].split("%", 1)[0] for info in infos]


class EgressFilteringTransport(httpx.AsyncBaseTransport):
    """
    httpx transport that refuses requests to non-public destinations.

    Wraps a real transport (AsyncHTTPTransport by default) and only
    delegates once the destination passes the policy.
    """

    def __init__(
        self,
        policy: Optional[EgressPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._policy = policy or EgressPolicy()
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        address = await self._check_destination(request)
        if address is not None:
            request = self._pin_address(request, address)
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        await self._transport.aclose()

    @staticmethod
    def _pin_address(request: httpx.Request, address: str) -> httpx.Request:
        """Same request, addressed to a validated IP instead of the host name."""
        extensions = dict(request.extensions)
        if request.url.scheme == "https":
            extensions["sni_hostname"] = request.url.host

        host = f"[{address}]" if ":" in address else address

        # Host header was set from the original URL and is carried over
        return httpx.Request(
            request.method,
            request.url.copy_with(host=host),
            headers=request.headers,
            stream=request.stream,
            extensions=extensions,
        )

    async def _check_destination(self, request: httpx.Request) -> Optional[str]:
        """
        Validate the destination and return the address to connect to,
        or None when private addresses are allowed and no pinning applies.
        """
        url = request.url
        scheme = url.scheme
        if scheme not in self._policy.allowed_schemes:
            raise EgressBlockedError(f"Scheme not allowed: {scheme}", request=request)

        port = url.port or DEFAULT_PORTS.get(scheme)
        if port not in self._policy.allowed_ports:
            raise EgressBlockedError(f"Port not allowed: {port}", request=request)

        host = url.host
        if not host:
            raise EgressBlockedError("Request has no host", request=request)

        if self._policy.allow_private_addresses:
            return None

        try:
            addresses = await resolve_host(host, port)
        except socket.gaierror as e:
            raise httpx.ConnectError(f"Could not resolve {host}: {e}", request=request) from e

        blocked = sorted({addr for addr in addresses if not is_public_address(addr)})
        if not addresses or blocked:
            logger.warning(
                "Blocked outbound request",
                extra={"host": host, "port": port, "addresses": blocked}
            )
            raise EgressBlockedError(
                f"Destination {host} resolves to a non-public address",
                request=request,
            )

        return addresses[0]


async def fetch_remote_object(
    url: str,
    policy: Optional[EgressPolicy] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RemoteObject:
    """
    Fetch a URL through the egress filter and buffer the whole body.

    Raises httpx.HTTPError (EgressBlockedError included) on failure or
    a non-2xx status.
    """
    egress = EgressFilteringTransport(policy=policy, transport=transport)
    async with httpx.AsyncClient(
        transport=egress,
        timeout=timeout,
        follow_redirects=True,
    ) as client:
        response = await client.get(url)
        response.raise_for_status()

        body = response.content
        # content-length describes the encoded payload; httpx has already decoded it
        return RemoteObject(
            body=body,
            content_type=response.headers.get("content-type", "application/octet-stream"),
            content_length=len(body),
        )
