"""HTTP transport adapters for mcp-companion (SSE and streamable HTTP).

Both adapters validate their URL up front and run a best-effort plain HTTP
reachability probe before the protocol handshake. A failed probe is
logged and otherwise ignored: many MCP endpoints reject a bare GET yet
still accept protocol traffic.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from mcp_companion.adapters.base import ReadStream, WriteStream
from mcp_companion.exceptions import InvalidURLError
from mcp_companion.models import TransportType

logger = logging.getLogger(__name__)


def validate_url(value: str) -> str:
    """Check that ``value`` is an absolute http(s) URL.

    Returns:
        The URL unchanged.

    Raises:
        InvalidURLError: If the value does not parse or lacks a scheme/host.
    """
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as exc:
        raise InvalidURLError(value) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidURLError(value)
    return value


async def probe_endpoint(
    url: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int | None:
    """Send a plain GET to ``url`` and report the status code.

    Only the response head is read, so SSE endpoints that stream forever
    do not block the probe.

    Args:
        url: Endpoint to probe.
        timeout: Seconds allowed for connect and response head.
        transport: Optional httpx transport (used in tests).

    Returns:
        The HTTP status code, or None if the request failed.
    """
    try:
        async with (
            httpx.AsyncClient(timeout=timeout, transport=transport) as client,
            client.stream("GET", url) as response,
        ):
            status = response.status_code
    except httpx.HTTPError as exc:
        logger.warning("HTTP endpoint probe for %s failed: %s", url, exc)
        return None
    logger.debug("HTTP endpoint %s responded with status %d", url, status)
    return status


class _HTTPAdapter:
    """Shared URL handling and preflight for the HTTP-based adapters."""

    def __init__(self, url: str, probe_timeout: float = 5.0) -> None:
        self.url = validate_url(url)
        self.probe_timeout = probe_timeout

    def describe(self) -> str:
        return self.url

    async def preflight(self) -> None:
        await probe_endpoint(self.url, self.probe_timeout)


class SSEAdapter(_HTTPAdapter):
    """Connects to a server's Server-Sent Events endpoint via ``sse_client()``."""

    @property
    def transport(self) -> TransportType:
        return TransportType.SSE

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[ReadStream, WriteStream]]:
        logger.debug("Opening SSE transport to %s", self.url)
        async with sse_client(self.url) as (read_stream, write_stream):
            yield read_stream, write_stream


class StreamableHTTPAdapter(_HTTPAdapter):
    """Connects to a streamable HTTP endpoint via ``streamablehttp_client()``."""

    @property
    def transport(self) -> TransportType:
        return TransportType.STREAMABLE_HTTP

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[ReadStream, WriteStream]]:
        logger.debug("Opening streamable HTTP transport to %s", self.url)
        async with streamablehttp_client(self.url) as (read_stream, write_stream, _session_id):
            yield read_stream, write_stream
