"""Protocol client: one MCP session over one transport adapter.

The MCP SDK's transports and ``ClientSession`` are anyio context managers
whose cancel scopes must be entered and exited by the same task. The
client therefore runs each session inside a dedicated owner task that
opens the transport, performs the initialize handshake, reports the result
back to ``connect()`` and then parks until ``disconnect()`` releases it.
Requests issued from other tasks are safe: they only talk to the session
through its memory streams.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from mcp import ClientSession
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    ReadResourceResult,
)
from pydantic import AnyUrl

from mcp_companion.adapters.base import TransportAdapter
from mcp_companion.exceptions import NotConnectedError

logger = logging.getLogger(__name__)


def prompt_arguments(arguments: dict[str, Any] | None) -> dict[str, str] | None:
    """Coerce prompt arguments to the string values the protocol requires.

    Non-string values are JSON encoded.
    """
    if arguments is None:
        return None
    return {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in arguments.items()
    }


def unwrap_exception(exc: Exception) -> Exception:
    """Strip single-member exception groups added by anyio task groups."""
    while isinstance(exc, ExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


class ProtocolClient:
    """Owns a single MCP session for the lifetime of one connection.

    Args:
        client_info: Name and version sent in the initialize request.

    Example:
        client = ProtocolClient(Implementation(name="MCP Companion", version="0.1.0"))
        result = await client.connect(adapter)
        tools = (await client.list_tools()).tools
        await client.disconnect()
    """

    def __init__(self, client_info: Implementation) -> None:
        self.client_info = client_info
        self._session: ClientSession | None = None
        self._ready: asyncio.Future[InitializeResult] | None = None
        self._release: asyncio.Event | None = None
        self._owner: asyncio.Task[None] | None = None
        self._label = "unconnected"

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def connect(self, adapter: TransportAdapter) -> InitializeResult:
        """Open the transport and perform the initialize handshake.

        Args:
            adapter: Transport to open. The client owns it until
                ``disconnect()``.

        Returns:
            The server's initialize result.

        Raises:
            RuntimeError: If this client was already connected.
            Exception: Whatever the transport or handshake raised. The
                transport is torn down before the error propagates,
                including when the caller is cancelled.
        """
        if self._owner is not None:
            raise RuntimeError("ProtocolClient.connect() may only be called once")
        self._label = adapter.describe()
        self._ready = asyncio.get_running_loop().create_future()
        self._release = asyncio.Event()
        self._owner = asyncio.create_task(
            self._run_session(adapter),
            name=f"mcp-session:{self._label}",
        )
        try:
            return await asyncio.shield(self._ready)
        except BaseException:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        """Close the session and transport. Safe to call multiple times."""
        owner = self._owner
        if owner is None or owner.done():
            self._session = None
            return
        assert self._release is not None
        self._release.set()
        if self._ready is not None and not self._ready.done():
            # Still handshaking: nothing to release, abort the attempt.
            owner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await owner
        self._session = None
        logger.debug("Session closed: %s", self._label)

    async def _run_session(self, adapter: TransportAdapter) -> None:
        """Owner task: hold the transport and session contexts open."""
        assert self._ready is not None and self._release is not None
        try:
            async with (
                adapter.open() as (read_stream, write_stream),
                ClientSession(read_stream, write_stream, client_info=self.client_info) as session,
            ):
                result = await session.initialize()
                self._session = session
                if not self._ready.done():
                    self._ready.set_result(result)
                logger.debug(
                    "Initialized %s (protocol %s)", self._label, result.protocolVersion
                )
                await self._release.wait()
        except Exception as exc:
            exc = unwrap_exception(exc)
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                logger.warning("Session for %s ended with error: %s", self._label, exc)
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.cancel()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise NotConnectedError(self._label)
        return self._session

    async def list_tools(self) -> ListToolsResult:
        return await self._require_session().list_tools()

    async def list_prompts(self) -> ListPromptsResult:
        return await self._require_session().list_prompts()

    async def list_resources(self) -> ListResourcesResult:
        return await self._require_session().list_resources()

    async def list_resource_templates(self) -> ListResourceTemplatesResult:
        return await self._require_session().list_resource_templates()

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        return await self._require_session().call_tool(name, arguments)

    async def get_prompt(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> GetPromptResult:
        return await self._require_session().get_prompt(name, prompt_arguments(arguments))

    async def read_resource(self, uri: str) -> ReadResourceResult:
        return await self._require_session().read_resource(AnyUrl(uri))
