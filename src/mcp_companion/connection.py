"""Per-server runtime connection record.

A ConnectionRecord exists only while a server is connecting or connected.
It owns the transport adapter, the protocol client (and through it any
spawned server process), the cached capability lists and the polling task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from mcp.types import InitializeResult, Prompt, Resource, ResourceTemplate, Tool

from mcp_companion.adapters.base import TransportAdapter
from mcp_companion.client import ProtocolClient

logger = logging.getLogger(__name__)


@dataclass
class ConnectionRecord:
    """Runtime state for one live server connection.

    Args:
        server_id: Registry id of the server this record belongs to.
        client: Protocol client holding the MCP session.
        adapter: Transport the client was connected over.
        initialize_result: Handshake result, set once connected.
        tools: Last fetched tool list.
        prompts: Last fetched prompt list.
        resources: Last fetched resource list.
        resource_templates: Last fetched resource template list.
        connected: True between a successful handshake and ``close()``.
        polling_task: The single active tool-polling task, if any.
    """

    server_id: str
    client: ProtocolClient
    adapter: TransportAdapter
    initialize_result: InitializeResult | None = None
    tools: list[Tool] = field(default_factory=list)
    prompts: list[Prompt] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    resource_templates: list[ResourceTemplate] = field(default_factory=list)
    connected: bool = False
    polling_task: asyncio.Task[None] | None = None

    def mark_connected(self, result: InitializeResult) -> None:
        self.initialize_result = result
        self.connected = True

    def has_tool(self, name: str) -> bool:
        return any(tool.name == name for tool in self.tools)

    def has_prompt(self, name: str) -> bool:
        return any(prompt.name == name for prompt in self.prompts)

    def has_resource(self, uri: str) -> bool:
        return any(str(resource.uri) == uri for resource in self.resources)

    async def refresh_tools(self) -> list[Tool]:
        self.tools = (await self.client.list_tools()).tools
        return self.tools

    async def refresh_prompts(self) -> list[Prompt]:
        self.prompts = (await self.client.list_prompts()).prompts
        return self.prompts

    async def refresh_resources(self) -> list[Resource]:
        self.resources = (await self.client.list_resources()).resources
        return self.resources

    async def refresh_resource_templates(self) -> list[ResourceTemplate]:
        self.resource_templates = (await self.client.list_resource_templates()).resourceTemplates
        return self.resource_templates

    def start_polling(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        """Replace the polling task, cancelling any previous one."""
        self.cancel_polling()
        self.polling_task = asyncio.create_task(coro, name=name)
        return self.polling_task

    def cancel_polling(self) -> asyncio.Task[None] | None:
        """Cancel the polling task and return it (so callers may await it)."""
        task, self.polling_task = self.polling_task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def close(self) -> None:
        """Stop polling and tear down the client, transport and process.

        Safe to call multiple times and from any removal path.
        """
        self.connected = False
        task = self.cancel_polling()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.client.disconnect()
        logger.debug("Connection record closed for %s", self.server_id)
